"""
Skyreader Auth - AT Protocol login and session service

This package lets Skyreader users sign in with their AT Protocol identity and
keeps their upstream tokens usable for as long as the session lives. The
backend holds the DPoP key for every session; browsers only ever see an
opaque session id.

Key Components:
- app: Web application layer with request handlers, configuration and background tasks
- atproto: OAuth client (PKCE, DPoP, PAR), discovery and the outbound HTTP middleware chain
- model: Cache records for the login flow and durable user rows
- resolve: Identity resolution for AT Protocol handles and DIDs
- session: Redis-backed pending authorizations and sessions, including refresh coordination

Architecture Overview:
1. Login:
   - A handle is resolved to a DID and PDS, the authorization server is discovered
   - The user is redirected with a PKCE challenge (pushed first when PAR is offered)
   - The callback exchanges the code for DPoP-bound tokens and creates a session

2. Session lifecycle:
   - Tokens are refreshed shortly before expiry, at most once at a time per session
   - Failed refreshes back off exponentially and lock the session out at a ceiling
   - A periodic sweep removes abandoned logins and dead sessions
"""
