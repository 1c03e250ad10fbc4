"""
User Service package for the Shopping Mesh.

Owns accounts and credentials, issues tokens and answers token validation
requests from the other services.
"""
