# ABOUTME: GitOps reconciler package initialization
# ABOUTME: Exposes version information

"""
GitOps Reconciler - keeps target environments converged on the state declared in Git.

=============================================================================
HOW IT WORKS
=============================================================================

For every configured scope (one source path, one environment, one target):

1. TRACK the branch and snapshot the files under the tracked path
2. COMPILE base documents and environment overlays into a flat desired set
3. OBSERVE the live counterparts of every desired object
4. DIFF desired against observed: Create, Update, Delete, Unchanged, Unknown
5. APPLY the pending deltas under the scope's sync policy

A separate drift monitor repeats steps 3-4 on its own interval and, with
self-heal enabled, corrects what it finds.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_reconciler/
├── __init__.py          <- Package entry point
├── models.py            <- Revisions, desired/observed sets, deltas, results
├── errors.py            <- Error taxonomy
├── config.py            <- Settings, scopes and sync policies
├── source.py            <- Source tracker
├── compiler.py          <- Desired-state compiler (base + overlays)
├── observer.py          <- Observed-state reader
├── diff.py              <- Diff engine (pure)
├── health.py            <- Health conditions and bounded polling
├── executor.py          <- Sync executor
├── drift.py             <- Drift monitor
├── controller.py        <- Per-scope controller and manager
├── server.py            <- MCP operator surface
└── utils/
    ├── client.py        <- HTTP clients for the source and target APIs
    ├── logging.py       <- Structured logging with audit trails
    └── safety.py        <- Guards, rate limiting and secret masking
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
