# ABOUTME: cd-sync package initialization
# ABOUTME: Exposes version information for the GitOps sync engine

"""
cd-sync - a GitOps sync engine for Kubernetes.

=============================================================================
WHAT IS THIS PACKAGE?
=============================================================================

An Application points at manifests in a git repository (plain YAML or a
Helm chart) and at a target cluster. The engine keeps the cluster matching
git:

1. RESOLVES the desired objects from git
2. COMPARES each one with its live counterpart (JSON merge patch + dry-run)
3. APPLIES creates and updates when drift is found
4. TRACKS which live objects it owns (DeployResource records)
5. GARBAGE COLLECTS objects whose manifests disappeared

A scheduler runs one background task per Application; push webhooks
trigger an immediate forced pass.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

cd_sync/
├── __init__.py          <- Package entry point
├── config.py            <- Settings (env vars, nested git/security settings)
├── errors.py            <- Error hierarchy raised by a sync pass
├── models.py            <- Application and DeployResource records
├── controller.py        <- Reconciler glue and runtime wiring
├── server.py            <- FastMCP admin surface
├── cluster/             <- ClusterStore contract + kubernetes_asyncio adapter
├── git/                 <- Git providers, webhook parsing, local checkouts
├── sync/                <- Resolver, drift, applier, tracker, engine, scheduler
└── utils/               <- Logging, audit trail, merge patch, safety guards
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
