"""
Domain models and collaborator protocols.
"""
