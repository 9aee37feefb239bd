"""
AT Protocol OAuth

This package implements the OAuth 2.0 authorization flow against AT Protocol
authorization servers.

Key Components:
- oauth.py: `OAuthClient`, the authorization flow orchestrator
- chain.py: Middleware chain for DPoP requests and the nonce handshake
- dpop.py: Per-session DPoP keys and proof generation
- pkce.py: PKCE verifier/challenge and state generation
- pds.py: Protected resource and authorization server metadata
- errors.py: `OAuthException` and its error codes

The authorization flow follows these steps:
1. Resolve the identifier to an authorization server
2. Push the authorization request (PKCE + DPoP) and redirect the user
3. Exchange the code, then verify issuer, subject and scope
4. Refresh tokens with the same DPoP key
"""
