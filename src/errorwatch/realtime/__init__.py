"""Real-time infrastructure — notification bus + SSE.

Learn: Notifications flow through two hops:
1. Workers → bus publish (backend-side broadcast per organization)
2. Bus subscription → SSE stream → dashboard (client dispatch table)

This decouples producers (queue workers) from consumers (browser tabs).
"""
