"""Authentication module.

Username/password registration and login issuing JWT bearer tokens. The
same tokens authenticate REST calls and websocket sessions.

Services:
    - TokenService: issue and verify access tokens.
    - hash_password / verify_password: passlib-backed password hashing.
"""
