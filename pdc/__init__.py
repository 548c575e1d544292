"""Progressive Delivery Controller (PDC).

Reconciles Rollout resources through canary and blue-green release
strategies:
 - replica set scaling for stable / canary identities
 - traffic weight shifting through pluggable routers
 - analysis gates backed by metric providers
 - timed and manual pauses, abort and rollback

State lives in a local sqlite store; the reconciler persists rollout status
with compare-and-swap semantics so reconciles are safe to repeat.
"""
