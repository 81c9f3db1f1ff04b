"""Dashboard authentication.

Learn: Sessions are owned by an upstream identity provider. This package
caches validated sessions (session_cache), talks to the provider
(identity) and turns both into a routing decision per request (gateway).
"""
