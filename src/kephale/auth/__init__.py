"""Authentication and authorization.

Learn: Tokens are issued by the main account service; this package only
verifies them. A request is authenticated by a Bearer JWT in the
Authorization header or, for browser clients, the auth-token cookie.
Both resolve to a CurrentUser carrying the user id, email and role.
"""
