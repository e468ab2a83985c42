# ABOUTME: Application and DeployResource records used by the sync engine
# ABOUTME: Converts custom-resource JSON into dataclasses and back

"""
Data model for the sync engine.

=============================================================================
APPLICATION
=============================================================================

An Application is a custom resource (cd.tmax.io/v1, kind Application):

    {
        "metadata": {"name": "guestbook", "namespace": "default"},
        "spec": {
            "source": {
                "repoURL": "https://github.com/example/deploy",
                "path": "guestbook",
                "targetRevision": "main",
                "type": "PlainYAML",
                "token": {"valueFrom": {"secretKeyRef": {"name": "git", "key": "token"}}}
            },
            "destination": {"name": "", "namespace": "guestbook"},
            "syncPolicy": {"autoSync": true, "syncCheckPeriod": 60}
        },
        "status": {
            "sync": {"status": "Synced", "timeCheck": "..."},
            "secrets": "<webhook secret>",
            "conditions": [
                {"type": "webhook-registered", "status": "True"},
                {"type": "ready", "status": "True"}
            ]
        }
    }

The dataclasses below flatten this into typed fields. `from_api_response`
does the reading, `to_status_patch` produces the status sub-document the
reconciler writes back through the status subresource.

=============================================================================
DEPLOYRESOURCE
=============================================================================

A DeployResource records that the engine owns one live object. It lives in
the Application's namespace on the default cluster and carries the
ownership label:

    cd.tmax.io/application: <appName>-<appNamespace>

Its name is the identity key `lower(app-kind-name-namespace)`, so tracking
the same object twice finds the same record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

GROUP = "cd.tmax.io"
API_VERSION = f"{GROUP}/v1"
APPLICATION_KIND = "Application"
DEPLOY_RESOURCE_KIND = "DeployResource"
OWNER_LABEL = f"{GROUP}/application"

SOURCE_PLAIN_YAML = "PlainYAML"
SOURCE_HELM = "Helm"

STATUS_UNKNOWN = "Unknown"
STATUS_SYNCED = "Synced"
STATUS_OUT_OF_SYNC = "OutOfSync"

CONDITION_READY = "ready"
CONDITION_WEBHOOK_REGISTERED = "webhook-registered"
REASON_NO_GIT_TOKEN = "noGitToken"


@dataclass
class GitToken:
    """Access token for the git provider, inline or from a Secret key."""

    value: str = ""
    secret_name: str = ""
    secret_key: str = ""

    @property
    def from_secret(self) -> bool:
        return bool(self.secret_name)

    @classmethod
    def from_api_response(cls, data: dict[str, Any] | None) -> GitToken | None:
        if not data:
            return None
        ref = (data.get("valueFrom") or {}).get("secretKeyRef") or {}
        return cls(
            value=data.get("value", ""),
            secret_name=ref.get("name", ""),
            secret_key=ref.get("key", ""),
        )


@dataclass
class ApplicationSource:
    """Where the desired manifests live."""

    repo_url: str
    path: str = ""
    target_revision: str = "main"
    type: str = SOURCE_PLAIN_YAML
    token: GitToken | None = None


@dataclass
class Destination:
    """Target cluster (empty name = default cluster) and namespace."""

    name: str = ""
    namespace: str = ""


@dataclass
class SyncPolicy:
    """How often to check and whether drift is applied automatically."""

    auto_sync: bool = False
    sync_check_period: int = 0


@dataclass
class SyncStatus:
    """Outcome of the last completed pass."""

    status: str = STATUS_UNKNOWN
    time_check: datetime | None = None


@dataclass
class Condition:
    """One entry of status.conditions; `status` is "True" or "False"."""

    type: str
    status: str = "False"
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = None

    @property
    def is_true(self) -> bool:
        return self.status == "True"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type, "status": self.status}
        if self.reason:
            data["reason"] = self.reason
        if self.message:
            data["message"] = self.message
        if self.last_transition_time:
            data["lastTransitionTime"] = self.last_transition_time.isoformat()
        return data

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> Condition:
        transition = data.get("lastTransitionTime")
        return cls(
            type=data.get("type", ""),
            status=data.get("status", "False"),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=datetime.fromisoformat(transition) if transition else None,
        )


@dataclass
class Application:
    """
    A declarative deployment: a git source reconciled into a destination.

    FIELDS EXPLAINED:
    -----------------
    - name / namespace: identity of the Application custom resource
    - source: repository, path, revision, manifest type, optional token
    - destination: target cluster name and namespace
    - sync_policy: auto_sync flag and check period in seconds
    - sync: status of the last completed pass
    - webhook_secret: shared secret used to validate incoming webhooks
    - conditions: ready / webhook-registered conditions
    - deletion_timestamp: set when the resource is being deleted
    """

    name: str
    namespace: str
    source: ApplicationSource
    destination: Destination = field(default_factory=Destination)
    sync_policy: SyncPolicy = field(default_factory=SyncPolicy)
    sync: SyncStatus = field(default_factory=SyncStatus)
    webhook_secret: str = ""
    conditions: list[Condition] = field(default_factory=list)
    deletion_timestamp: str | None = None

    @property
    def key(self) -> str:
        """Scheduler registry key."""
        return f"{self.name}/{self.namespace}"

    @property
    def owner_label(self) -> str:
        """Value of the ownership label on DeployResource records."""
        return f"{self.name}-{self.namespace}"

    def set_defaults(self, default_period: int) -> bool:
        """
        Fill in status and period defaults.

        Returns True when anything changed, so the caller knows whether the
        resource needs writing back.
        """
        changed = False
        if not self.sync.status:
            self.sync.status = STATUS_UNKNOWN
            changed = True
        if self.sync_policy.sync_check_period <= 0:
            self.sync_policy.sync_check_period = default_period
            changed = True
        return changed

    @property
    def target_namespace(self) -> str:
        """Namespace given to manifests that do not set one."""
        return self.destination.namespace or "default"

    def mark(self, status: str) -> None:
        """Record the outcome of a completed pass."""
        self.sync.status = status
        self.sync.time_check = datetime.now(UTC)

    def get_condition(self, condition_type: str) -> Condition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(
        self, condition_type: str, status: bool, reason: str = "", message: str = ""
    ) -> bool:
        """
        Add or update a condition. Returns True when anything changed.

        lastTransitionTime only moves when the True/False status flips.
        """
        value = "True" if status else "False"
        current = self.get_condition(condition_type)
        if current is None:
            self.conditions.append(
                Condition(condition_type, value, reason, message, datetime.now(UTC))
            )
            return True
        if (current.status, current.reason, current.message) == (value, reason, message):
            return False
        if current.status != value:
            current.last_transition_time = datetime.now(UTC)
        current.status, current.reason, current.message = value, reason, message
        return True

    def to_status_patch(self) -> dict[str, Any]:
        time_check = self.sync.time_check.isoformat() if self.sync.time_check else None
        status: dict[str, Any] = {
            "sync": {"status": self.sync.status, "timeCheck": time_check},
            "conditions": [c.to_dict() for c in self.conditions],
        }
        if self.webhook_secret:
            status["secrets"] = self.webhook_secret
        return {"status": status}

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> Application:
        """Create an Application from the custom resource JSON."""
        metadata = data.get("metadata", {})
        spec = data.get("spec", {})
        status = data.get("status") or {}

        source = spec.get("source", {})
        destination = spec.get("destination", {})
        policy = spec.get("syncPolicy", {})
        sync = status.get("sync", {})

        time_check = sync.get("timeCheck")

        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", "default"),
            source=ApplicationSource(
                repo_url=source.get("repoURL", ""),
                path=source.get("path", ""),
                target_revision=source.get("targetRevision", "main"),
                type=source.get("type", SOURCE_PLAIN_YAML),
                token=GitToken.from_api_response(source.get("token")),
            ),
            destination=Destination(
                name=destination.get("name", ""),
                namespace=destination.get("namespace", ""),
            ),
            sync_policy=SyncPolicy(
                auto_sync=bool(policy.get("autoSync", False)),
                sync_check_period=int(policy.get("syncCheckPeriod", 0) or 0),
            ),
            sync=SyncStatus(
                status=sync.get("status", STATUS_UNKNOWN),
                time_check=datetime.fromisoformat(time_check) if time_check else None,
            ),
            webhook_secret=status.get("secrets", ""),
            conditions=[
                Condition.from_api_response(c) for c in status.get("conditions") or []
            ],
            deletion_timestamp=metadata.get("deletionTimestamp"),
        )


def deploy_resource_key(app_name: str, kind: str, name: str, namespace: str) -> str:
    """Identity key of the record tracking one live object."""
    return f"{app_name}-{kind}-{name}-{namespace}".lower()


@dataclass
class DeployResource:
    """Ownership record for one live object."""

    key: str
    application: str
    app_namespace: str
    api_version: str
    kind: str
    name: str
    namespace: str
    owner_label: str = ""

    @classmethod
    def for_object(cls, obj: dict[str, Any], app: Application) -> DeployResource:
        metadata = obj.get("metadata", {})
        name = metadata.get("name", "")
        namespace = metadata.get("namespace", "")
        kind = obj.get("kind", "")
        return cls(
            key=deploy_resource_key(app.name, kind, name, namespace),
            application=app.name,
            app_namespace=app.namespace,
            api_version=obj.get("apiVersion", ""),
            kind=kind,
            name=name,
            namespace=namespace,
            owner_label=app.owner_label,
        )

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> DeployResource:
        metadata = data.get("metadata", {})
        spec = data.get("spec", {})
        return cls(
            key=metadata.get("name", ""),
            application=data.get("application", ""),
            app_namespace=metadata.get("namespace", ""),
            api_version=spec.get("apiVersion", ""),
            kind=spec.get("kind", ""),
            name=spec.get("name", ""),
            namespace=spec.get("namespace", ""),
            owner_label=(metadata.get("labels") or {}).get(OWNER_LABEL, ""),
        )

    def to_manifest(self) -> dict[str, Any]:
        return {
            "apiVersion": API_VERSION,
            "kind": DEPLOY_RESOURCE_KIND,
            "metadata": {
                "name": self.key,
                "namespace": self.app_namespace,
                "labels": {OWNER_LABEL: self.owner_label},
            },
            "application": self.application,
            "spec": {
                "apiVersion": self.api_version,
                "kind": self.kind,
                "name": self.name,
                "namespace": self.namespace,
            },
        }
