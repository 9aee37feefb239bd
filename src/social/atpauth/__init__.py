"""
atpauth - AT Protocol OAuth Client

This package implements an OAuth 2.0 client for the AT Protocol, where the
user's Personal Data Server (PDS) and authorization server are not known in
advance but discovered at runtime from a handle or DID.

Key Components:
- app: Settings, logging and Sentry bootstrap, background tasks, utility CLI
- atproto: The authorization flow, DPoP, PKCE and the request middleware chain
- model: Wire shapes and session records
- resolve: Handle and DID resolution with SSRF guards
- store: Pending authorization state and the session token store

Architecture Overview:
1. Discovery:
   - handle -> DID -> DID document -> PDS -> authorization server metadata
2. Authorization:
   - Pushed authorization request with PKCE and a per-session DPoP key
   - Callback verification of state, issuer, subject and scope
3. Session:
   - DPoP-bound tokens owned by an `OAuthSessionResult`
   - Refresh keeps the key binding; sessions can be exported and restored
"""
