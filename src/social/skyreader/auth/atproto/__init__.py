"""
AT Protocol Integration

This package provides the OAuth client used to log users in and the plumbing
it needs to talk to authorization servers and Personal Data Server (PDS)
instances.

Key Components:
- oauth.py: Authorization request, code exchange, refresh and revocation
- chain.py: Middleware chain for outbound requests (DPoP, nonce retry, metrics)
- pds.py: Discovery documents and profile reads
- jwt.py: DPoP keys and proofs
- pkce.py: PKCE verifier and challenge
- errors.py: Typed failures with stable error codes

Every token endpoint call carries a DPoP proof. A ``use_dpop_nonce`` challenge
is answered exactly once; a second challenge fails the call.
"""
