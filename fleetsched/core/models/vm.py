# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Inventory and snapshot records consumed from the virtualization platform."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class VirtualMachine(BaseModel):
    """An inventory entry."""

    id: int
    name: Optional[str] = None
    node: Optional[str] = None
    status: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @property
    def label(self) -> str:
        """Display name used in snapshot names and logs."""
        return self.name or f"vm-{self.id}"


class Snapshot(BaseModel):
    """A snapshot as listed by the snapshot service."""

    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    vm_state: bool = False
