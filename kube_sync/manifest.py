"""Representation of Application declarations and the resources they manage.

An Application binds one desired state source (a path in a Git repository at a
revision) to one destination (a namespace in a target cluster). Applications
are declared as YAML documents and may be read from a single file or from a
directory of files.
"""

from dataclasses import dataclass, field
from enum import StrEnum
import logging
from pathlib import Path
from typing import Any, ClassVar, cast

import aiofiles
from aiofiles.ospath import isdir
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField
import yaml

from .exceptions import InputException

__all__ = [
    "read_applications",
    "Application",
    "ApplicationSource",
    "ApplicationDestination",
    "SyncPolicy",
    "RenderMode",
    "NamedResource",
    "DesiredState",
    "LiveState",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
APPLICATION_DOMAIN = "kube-sync.io"
APPLICATION_KIND = "Application"
DEFAULT_NAMESPACE = "kube-sync"
DEFAULT_SERVER = "https://kubernetes.default.svc"
DEFAULT_REVISION = "HEAD"
DEFAULT_INTERVAL = 180

OWNER_LABEL = "app.kube-sync.io/instance"
"""Label binding a live resource to the Application that created it."""

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "kube-sync"

NAMESPACE_KIND = "Namespace"
CRD_KIND = "CustomResourceDefinition"

# Kinds that are not namespaced. Objects of these kinds never receive the
# destination namespace during rendering.
CLUSTER_SCOPED_KINDS = {
    NAMESPACE_KIND,
    CRD_KIND,
    "ClusterRole",
    "ClusterRoleBinding",
    "PersistentVolume",
    "StorageClass",
    "IngressClass",
    "PriorityClass",
    "APIService",
    "MutatingWebhookConfiguration",
    "ValidatingWebhookConfiguration",
}

APPLICATION_FILE_SUFFIXES = (".yaml", ".yml")


def _check_version(doc: dict[str, Any], version: str) -> None:
    """Assert that the resource has the specified version."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(version):
        raise InputException(f"Invalid object expected '{version}': {doc}")


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @property
    def owner_id(self) -> str:
        """Value of the ownership label for resources owned by this object."""
        if self.namespace:
            return f"{self.namespace}.{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"

    @classmethod
    def parse(cls, value: str, kind: str = APPLICATION_KIND) -> "NamedResource":
        """Parse a `namespace/name` or `name` string into a resource id."""
        if "/" in value:
            namespace, name = value.split("/", 1)
            return cls(kind=kind, namespace=namespace, name=name)
        return cls(kind=kind, namespace=DEFAULT_NAMESPACE, name=value)


class RenderMode(StrEnum):
    """How the files at the source path are turned into manifests."""

    PLAIN = "plain"
    """A directory of YAML manifests, applied as-is."""

    KUSTOMIZE = "kustomize"
    """A kustomization (base or overlay) rendered with `kustomize build`."""


@dataclass
class ApplicationSource(BaseManifest):
    """Where the desired state of an Application is read from."""

    repo_url: str = field(metadata=field_options(alias="repoURL"))
    """URL of the Git repository."""

    revision: str = DEFAULT_REVISION
    """Branch, tag or commit SHA to check out."""

    path: str = "."
    """Path within the repository holding the manifests or overlay."""

    render_mode: RenderMode = field(
        metadata=field_options(alias="renderMode"), default=RenderMode.PLAIN
    )
    """How the path is rendered."""

    substitute: dict[str, str] | None = None
    """Variables substituted into the rendered manifests."""

    token_env: str | None = field(
        metadata=field_options(alias="tokenEnv"), default=None
    )
    """Environment variable holding an HTTPS access token."""

    ssh_key_file: str | None = field(
        metadata=field_options(alias="sshKeyFile"), default=None
    )
    """Path to an SSH private key used for SSH URLs."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass
class ApplicationDestination(BaseManifest):
    """The target cluster and namespace of an Application."""

    namespace: str
    """Namespace that namespaced resources are created in."""

    server: str = DEFAULT_SERVER
    """Endpoint of the target cluster, for informational purposes."""

    context: str | None = None
    """Optional kubeconfig context used to reach the cluster."""

    @property
    def cluster_key(self) -> str:
        """Key identifying the target cluster connection."""
        return f"{self.server}#{self.context or ''}"


@dataclass
class SyncPolicy(BaseManifest):
    """How often and how aggressively an Application is reconciled."""

    interval: int = DEFAULT_INTERVAL
    """Seconds between polls of the source."""

    prune: bool = True
    """Remove owned resources that are no longer declared."""


@dataclass
class Application(BaseManifest):
    """A long lived binding of one desired state source to one destination."""

    kind: ClassVar[str] = APPLICATION_KIND
    """The kind of the object."""

    name: str
    """The name of the Application."""

    namespace: str
    """The namespace that owns the Application declaration."""

    source: ApplicationSource
    """Where the desired state is read from."""

    destination: ApplicationDestination
    """Where the desired state is applied."""

    sync_policy: SyncPolicy = field(
        metadata=field_options(alias="syncPolicy"), default_factory=SyncPolicy
    )
    """Reconciliation policy."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Application":
        """Parse an Application from a YAML document."""
        _check_version(doc, APPLICATION_DOMAIN)
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls.kind} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls.kind} missing metadata.name: {doc}")
        namespace = metadata.get("namespace", DEFAULT_NAMESPACE)
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls.kind} missing spec: {doc}")
        if not (source := spec.get("source")):
            raise InputException(f"Invalid {cls.kind} missing spec.source: {doc}")
        if not source.get("repoURL"):
            raise InputException(
                f"Invalid {cls.kind} missing spec.source.repoURL: {doc}"
            )
        if not (destination := spec.get("destination")):
            raise InputException(
                f"Invalid {cls.kind} missing spec.destination: {doc}"
            )
        if not destination.get("namespace"):
            raise InputException(
                f"Invalid {cls.kind} missing spec.destination.namespace: {doc}"
            )
        render_mode = source.get("renderMode", RenderMode.PLAIN.value)
        if render_mode not in {mode.value for mode in RenderMode}:
            raise InputException(
                f"Invalid {cls.kind} spec.source.renderMode '{render_mode}': {doc}"
            )
        try:
            return cls(
                name=name,
                namespace=namespace,
                source=ApplicationSource.from_dict(source),
                destination=ApplicationDestination.from_dict(destination),
                sync_policy=SyncPolicy.from_dict(spec.get("syncPolicy") or {}),
            )
        except (MissingField, InvalidFieldValue, ValueError) as err:
            raise InputException(f"Invalid {cls.kind} {name}: {err}") from err

    @property
    def app_id(self) -> NamedResource:
        """Identifier for the Application."""
        return NamedResource(
            kind=APPLICATION_KIND, namespace=self.namespace, name=self.name
        )

    @property
    def owner_id(self) -> str:
        """Value of the ownership label on every resource this Application owns."""
        return self.app_id.owner_id

    @property
    def namespaced_name(self) -> str:
        """Return the namespace and name concatenated as an id."""
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True, kw_only=True)
class DesiredState:
    """The rendered desired state of an Application for one sync attempt."""

    app_id: NamedResource
    """The Application this state belongs to."""

    repo_url: str
    """URL of the source repository."""

    revision: str
    """The requested revision (branch, tag or commit)."""

    resolved_revision: str
    """The commit SHA the revision resolved to."""

    path: str
    """Path within the repository."""

    server: str
    """Endpoint of the target cluster."""

    namespace: str
    """Target namespace."""

    render_mode: RenderMode
    """How the path was rendered."""

    resources: list[dict[str, Any]] = field(default_factory=list)
    """Rendered resources in declaration order."""


@dataclass(kw_only=True)
class LiveState:
    """Resources present in the target that an Application owns or collides with."""

    owner: str
    """The ownership label value of the Application."""

    resources: dict[NamedResource, dict[str, Any]] = field(default_factory=dict)
    """Live objects keyed by identity, in observed order."""

    def owned(self) -> list[NamedResource]:
        """Return identities of resources carrying this Application's label."""
        return [
            resource_id
            for resource_id, obj in self.resources.items()
            if owner_of(obj) == self.owner
        ]


def owner_of(obj: dict[str, Any]) -> str | None:
    """Return the ownership label value of a live object, if any."""
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return cast(str | None, labels.get(OWNER_LABEL))


def with_ownership(obj: dict[str, Any], owner: str) -> dict[str, Any]:
    """Return a copy of the object carrying the ownership labels."""
    metadata = dict(obj.get("metadata") or {})
    labels = dict(metadata.get("labels") or {})
    labels[OWNER_LABEL] = owner
    labels.setdefault(MANAGED_BY_LABEL, MANAGED_BY)
    metadata["labels"] = labels
    return {**obj, "metadata": metadata}


def is_application(doc: dict[str, Any]) -> bool:
    """Check if the document is an Application declaration."""
    return doc.get("kind") == APPLICATION_KIND and str(
        doc.get("apiVersion", "")
    ).startswith(APPLICATION_DOMAIN)


async def _read_docs(path: Path) -> list[dict[str, Any]]:
    async with aiofiles.open(str(path)) as app_file:
        content = await app_file.read()
    try:
        return [doc for doc in yaml.safe_load_all(content) if doc]
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse Application file {path}: {err}") from err


async def read_applications(path: Path) -> list[Application]:
    """Read Application declarations from a file or a directory of files.

    Documents of other kinds in the same files are ignored.
    """
    if await isdir(path):
        files = sorted(
            child
            for child in path.iterdir()
            if child.suffix in APPLICATION_FILE_SUFFIXES
        )
    elif path.exists():
        files = [path]
    else:
        raise InputException(f"Application path does not exist: {path}")

    apps: list[Application] = []
    seen: set[NamedResource] = set()
    for app_file in files:
        for doc in await _read_docs(app_file):
            if not is_application(doc):
                _LOGGER.debug("Skipping non-Application document in %s", app_file)
                continue
            app = Application.parse_doc(doc)
            if app.app_id in seen:
                raise InputException(
                    f"Duplicate Application {app.namespaced_name} in {app_file}"
                )
            seen.add(app.app_id)
            apps.append(app)
    _LOGGER.debug("Read %d Applications from %s", len(apps), path)
    return apps


def application_doc(app: Application) -> dict[str, Any]:
    """Return the YAML document form of an Application."""
    return {
        "apiVersion": f"{APPLICATION_DOMAIN}/v1alpha1",
        "kind": APPLICATION_KIND,
        "metadata": {"name": app.name, "namespace": app.namespace},
        "spec": {
            "source": app.source.to_dict(),
            "destination": app.destination.to_dict(),
            "syncPolicy": app.sync_policy.to_dict(),
        },
    }
