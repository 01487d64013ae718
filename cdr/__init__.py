"""Continuous Deployment Reconciler (CDR).

Single-lineage deployment controller that:
 - stores versioned desired state (image, replicas, port)
 - observes the running fleet through immutable snapshots
 - diffs desired vs. observed and applies corrective actions
 - rolls image changes out a third of the fleet at a time
 - exposes per-revision convergence status

Pushes to the deploy branch become new desired-state revisions.
"""
