"""VM selectors and their resolution against the management service."""

from dataclasses import dataclass
from typing import Optional

from .errors import VmAmbiguous, VmNotFound
from .interfaces.management import (
    InstanceAmbiguous,
    InstanceNotFound,
    ManagedInstance,
    ManagementService,
)

VM_CLASS = "Msvm_ComputerSystem"


@dataclass(frozen=True)
class VirtualMachineRef:
    """Selects a VM either by display name or by its stable id."""

    name: Optional[str] = None
    vm_id: Optional[str] = None

    def __post_init__(self):
        if (self.name is None) == (self.vm_id is None):
            raise ValueError("VirtualMachineRef needs exactly one of name or vm_id")
        if self.name is not None and not self.name.strip():
            raise ValueError("VM name cannot be empty")

    @classmethod
    def by_name(cls, name: str) -> "VirtualMachineRef":
        return cls(name=name)

    @classmethod
    def by_id(cls, vm_id: str) -> "VirtualMachineRef":
        return cls(vm_id=vm_id)

    @classmethod
    def coerce(cls, value) -> "VirtualMachineRef":
        """Accept a ref or a bare VM name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls(name=value)
        raise TypeError(f"Cannot use {type(value).__name__} as a VM selector")

    def __str__(self) -> str:
        return self.name if self.name is not None else f"id={self.vm_id}"


@dataclass(frozen=True)
class ResolvedVm:
    """A live VM instance found for a selector."""

    vm_id: str
    name: str
    instance: ManagedInstance

    @property
    def path(self) -> str:
        return self.instance.path


def resolve_vm(service: ManagementService, ref: VirtualMachineRef, operation: str) -> ResolvedVm:
    """Resolve ``ref`` to exactly one VM or fail with VmNotFound / VmAmbiguous.

    Only read-only queries are issued here.
    """
    if ref.name is not None:
        filters = {"ElementName": ref.name}
    else:
        filters = {"Name": ref.vm_id}
    # Host computer systems share the class; only virtual machines qualify
    filters["Caption"] = "Virtual Machine"

    try:
        instance = service.query_instance(VM_CLASS, **filters)
    except InstanceNotFound:
        raise VmNotFound("no VM matches the selector", operation=operation, target=str(ref))
    except InstanceAmbiguous as e:
        raise VmAmbiguous(
            f"selector matches {e.count} VMs", count=e.count, operation=operation, target=str(ref)
        )

    return ResolvedVm(
        vm_id=instance.get("Name"),
        name=instance.get("ElementName"),
        instance=instance,
    )
