# ABOUTME: Sync package for the cd-sync engine
# ABOUTME: Manifest resolution, drift detection, apply, tracking, scheduling and webhook dispatch

"""
Sync components, leaf first:

    - manifest.py: PlainYAML / Helm resolvers and resolver_for
    - helm.py: chart checkout and dry-run rendering
    - target.py: target cluster resolution
    - drift.py: merge-patch drift detection
    - applier.py: create / update of one object
    - tracker.py: DeployResource records and garbage collection
    - engine.py: SyncEngine.sync / clear
    - scheduler.py: one periodic task per Application
    - webhook.py: webhook plugins and dispatch
"""
