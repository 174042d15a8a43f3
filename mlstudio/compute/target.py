"""Named compute targets: provisioning, lookup and deletion."""

import logging
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, Field

from mlstudio.compute.cluster import ComputeCluster, get_cluster, drop_cluster
from mlstudio.config import settings
from mlstudio.exceptions import ComputeNotFoundError, ComputeProvisioningError
from mlstudio.workspace.models import ComputeRecord

logger = logging.getLogger(__name__)

LOCAL_COMPUTE_NAME = "local"


class ProvisioningConfiguration(BaseModel):
    """Requested shape of a compute cluster."""

    vm_size: str
    vm_priority: str = "dedicated"
    min_nodes: int = 0
    max_nodes: int = 4
    idle_seconds_before_scaledown: int = Field(
        default_factory=lambda: settings.compute.default_idle_seconds_before_scaledown
    )


class AmlCompute:
    """Factory for managed cluster provisioning configurations."""

    @staticmethod
    def provisioning_configuration(
        vm_size: str = "STANDARD_DS3_V2",
        min_nodes: int = 0,
        max_nodes: int = 4,
        idle_seconds_before_scaledown: Optional[int] = None,
        vm_priority: str = "dedicated"
    ) -> ProvisioningConfiguration:
        kwargs: Dict[str, Any] = {}
        if idle_seconds_before_scaledown is not None:
            kwargs["idle_seconds_before_scaledown"] = idle_seconds_before_scaledown
        return ProvisioningConfiguration(
            vm_size=vm_size,
            vm_priority=vm_priority,
            min_nodes=min_nodes,
            max_nodes=max_nodes,
            **kwargs
        )


def _validate_configuration(name: str, config: ProvisioningConfiguration) -> None:
    allowed = {size.upper() for size in settings.compute.vm_sizes} - {"LOCAL"}
    if config.vm_size.upper() not in allowed:
        raise ComputeProvisioningError(
            f"VM size '{config.vm_size}' is not available",
            details={"allowed": sorted(allowed)}
        )
    if config.vm_priority not in ("dedicated", "lowpriority"):
        raise ComputeProvisioningError(f"Unknown VM priority '{config.vm_priority}'")
    if config.min_nodes < 0 or config.max_nodes < 1:
        raise ComputeProvisioningError(
            f"Invalid node bounds for '{name}': min_nodes={config.min_nodes}, max_nodes={config.max_nodes}"
        )
    if config.min_nodes > config.max_nodes:
        raise ComputeProvisioningError(
            f"min_nodes ({config.min_nodes}) exceeds max_nodes ({config.max_nodes}) for '{name}'"
        )
    if config.max_nodes > settings.compute.max_nodes_quota:
        raise ComputeProvisioningError(
            f"max_nodes {config.max_nodes} exceeds the quota of {settings.compute.max_nodes_quota}",
            details={"quota": settings.compute.max_nodes_quota}
        )
    if config.idle_seconds_before_scaledown < 0:
        raise ComputeProvisioningError("idle_seconds_before_scaledown must be non-negative")


class ComputeTarget:
    """A named, reusable pool of compute nodes in a workspace."""

    def __init__(self, workspace, name: str):
        """
        Fetch an existing compute target.

        Raises:
            ComputeNotFoundError: If no target with this name exists
        """
        document = workspace.metadata.read(f"computes/{name}.json")
        if document is None:
            raise ComputeNotFoundError(
                f"Compute target '{name}' not found in workspace '{workspace.name}'",
                details={"name": name}
            )
        self.workspace = workspace
        self.record = ComputeRecord(**document)

    def __repr__(self) -> str:
        return (
            f"ComputeTarget(name={self.name!r}, vm_size={self.vm_size!r}, "
            f"nodes={self.min_nodes}..{self.max_nodes})"
        )

    @property
    def name(self) -> str:
        return self.record.name

    @property
    def vm_size(self) -> str:
        return self.record.vm_size

    @property
    def min_nodes(self) -> int:
        return self.record.min_nodes

    @property
    def max_nodes(self) -> int:
        return self.record.max_nodes

    @property
    def idle_seconds_before_scaledown(self) -> int:
        return self.record.idle_seconds_before_scaledown

    @property
    def provisioning_state(self) -> str:
        return self.record.provisioning_state

    @property
    def cluster(self) -> ComputeCluster:
        return get_cluster(
            str(self.workspace.path),
            self.name,
            self.min_nodes,
            self.max_nodes,
            self.idle_seconds_before_scaledown,
        )

    @classmethod
    def create(cls, workspace, name: str, provisioning_configuration: ProvisioningConfiguration) -> "ComputeTarget":
        """
        Provision a compute target, or return it if it already exists with the same configuration.

        Raises:
            ComputeProvisioningError: If the configuration is invalid or conflicts with an existing target
        """
        if name == LOCAL_COMPUTE_NAME:
            raise ComputeProvisioningError(f"'{LOCAL_COMPUTE_NAME}' is reserved for the built-in target")

        _validate_configuration(name, provisioning_configuration)

        with workspace.metadata.lock:
            existing = workspace.metadata.read(f"computes/{name}.json")
            if existing is not None:
                current = ComputeRecord(**existing)
                requested = provisioning_configuration.model_dump()
                if any(getattr(current, key) != value for key, value in requested.items()):
                    raise ComputeProvisioningError(
                        f"Compute target '{name}' already exists with a different configuration",
                        details={"existing": current.model_dump(mode="json")}
                    )
                logger.info(f"Found existing compute target '{name}', using it")
                return cls(workspace, name)

            record = ComputeRecord(
                name=name,
                compute_type="AmlCompute",
                provisioning_state="Succeeded",
                **provisioning_configuration.model_dump()
            )
            workspace.metadata.write(f"computes/{name}.json", record.model_dump(mode="json"))

        logger.info(
            f"Provisioned compute target '{name}' ({record.vm_size}, "
            f"{record.min_nodes}-{record.max_nodes} nodes)"
        )
        return cls(workspace, name)

    @classmethod
    def create_local(cls, workspace) -> "ComputeTarget":
        """Create the built-in in-process target if it does not exist yet."""
        key = f"computes/{LOCAL_COMPUTE_NAME}.json"
        if not workspace.metadata.exists(key):
            record = ComputeRecord(
                name=LOCAL_COMPUTE_NAME,
                compute_type="Local",
                vm_size="LOCAL",
                min_nodes=0,
                max_nodes=max(1, settings.compute.local_max_nodes),
                idle_seconds_before_scaledown=0,
                provisioning_state="Succeeded",
            )
            workspace.metadata.write(key, record.model_dump(mode="json"))
        return cls(workspace, LOCAL_COMPUTE_NAME)

    @classmethod
    def list(cls, workspace) -> List["ComputeTarget"]:
        return [
            cls(workspace, key.rsplit("/", 1)[-1][:-len(".json")])
            for key in workspace.metadata.list("computes")
        ]

    def wait_for_completion(self, show_output: bool = False) -> None:
        """Provisioning is synchronous, so this only reports the state."""
        if show_output:
            print(f"Compute '{self.name}': {self.provisioning_state}")

    def get_status(self) -> Dict[str, Any]:
        status = {"provisioning_state": self.provisioning_state, "vm_size": self.vm_size}
        status.update(self.cluster.get_status())
        return status

    def delete(self) -> None:
        """
        Remove the target from the workspace.

        Raises:
            ComputeProvisioningError: For the built-in local target or a target with busy nodes
        """
        if self.name == LOCAL_COMPUTE_NAME:
            raise ComputeProvisioningError("The built-in local compute target cannot be deleted")
        if self.cluster.get_status()["busy_node_count"] > 0:
            raise ComputeProvisioningError(f"Compute target '{self.name}' has running jobs")

        self.workspace.metadata.delete(f"computes/{self.name}.json")
        drop_cluster(str(self.workspace.path), self.name)
        logger.info(f"Deleted compute target '{self.name}'")


def resolve_compute_target(workspace, target) -> ComputeTarget:
    """Accept a ComputeTarget, a target name or None (local)."""
    if isinstance(target, ComputeTarget):
        return target
    return ComputeTarget(workspace, target or LOCAL_COMPUTE_NAME)
