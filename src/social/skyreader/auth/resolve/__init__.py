"""
Account resolution.

Turns whatever a user typed on the login form into the identity the OAuth flow
works with: a DID, the handle verified for it, and the PDS hosting the account.

``handle.resolve_subject`` is the entry point. Handles are normalized first
(leading ``@`` dropped, lowercased, a bare name gets the default suffix), then
resolved over DNS (``_atproto.{handle}`` TXT) and, when that finds nothing,
over HTTPS (``/.well-known/atproto-did``). DID documents come from the PLC
directory for ``did:plc`` and from the host itself for ``did:web``. A handle
is only accepted when the DID document claims it back in ``alsoKnownAs``, and
the PDS endpoint must be an http(s) URL.

Failures are reported as typed ``AuthFlowException`` subclasses so the login
endpoint can turn them into a message the user can act on.

``python -m social.skyreader.auth.resolve`` exposes the same code as a CLI.
"""
