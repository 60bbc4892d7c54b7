"""Authentication: bearer-token verification for REST and WebSocket clients.

Services:
    - IdentityVerifier: maps a JWT to an Identity (user_id, user_name).
    - get_current_user: FastAPI dependency for REST endpoints.
"""
