"""
Cache-backed state for the login flow and authenticated sessions.

Pending authorizations (one per in-flight login) and sessions (one per
authenticated user-agent) are stored in Redis as JSON documents. Sorted-set
indexes keyed by expiry let the periodic sweep find dead entries without
scanning the keyspace.
"""
