# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Capabilities consumed from the virtualization platform."""

from typing import Dict, Iterable, List, Optional, Protocol, Set, runtime_checkable

from fleetsched.core.models.vm import Snapshot, VirtualMachine


@runtime_checkable
class VMInventory(Protocol):
    """Lists the VMs the scheduler may act on."""

    def list_vms(self) -> List[VirtualMachine]:
        """Return every VM, in a stable order."""
        ...


@runtime_checkable
class TagLookup(Protocol):
    """Resolves the tags carried by a VM."""

    def get_tags(self, vm_id: int) -> Set[str]:
        """Return the tag set of a VM."""
        ...


@runtime_checkable
class SnapshotService(Protocol):
    """Snapshot actions on the platform."""

    def create_snapshot(
        self,
        vm: VirtualMachine,
        name: str,
        description: str,
        include_vm_state: bool = False,
    ) -> Optional[str]:
        """Create a snapshot. Returns a platform task id if any."""
        ...

    def list_snapshots(self, vm: VirtualMachine) -> List[Snapshot]:
        """List the snapshots of a VM."""
        ...

    def delete_snapshot(self, vm: VirtualMachine, name: str) -> None:
        """Delete a snapshot by name."""
        ...


class StaticInventory:
    """In-memory inventory, also usable as a TagLookup."""

    def __init__(self, vms: Optional[Iterable[VirtualMachine]] = None) -> None:
        self._vms: Dict[int, VirtualMachine] = {}
        for vm in vms or []:
            self.add(vm)

    def add(self, vm: VirtualMachine) -> None:
        """Add or replace a VM."""
        self._vms[vm.id] = vm

    def remove(self, vm_id: int) -> bool:
        """Remove a VM. Returns True if it was present."""
        return self._vms.pop(vm_id, None) is not None

    def list_vms(self) -> List[VirtualMachine]:
        return list(self._vms.values())

    def get_tags(self, vm_id: int) -> Set[str]:
        vm = self._vms.get(vm_id)
        return set(vm.tags) if vm else set()


class InventoryTagLookup:
    """TagLookup that reads the ``tags`` field of inventory entries.

    Entries are indexed on first use and on every miss, so VMs added to the
    inventory after construction are still found.
    """

    def __init__(self, inventory: VMInventory) -> None:
        self._inventory = inventory
        self._index: Dict[int, VirtualMachine] = {}

    def _refresh(self) -> None:
        self._index = {vm.id: vm for vm in self._inventory.list_vms()}

    def get_tags(self, vm_id: int) -> Set[str]:
        if vm_id not in self._index:
            self._refresh()
        vm = self._index.get(vm_id)
        return set(vm.tags) if vm else set()
