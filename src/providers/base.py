"""Provider contract consumed by the deployment executor."""

from typing import Protocol, runtime_checkable

from common import OperationResult


@runtime_checkable
class ResourceProvider(Protocol):
    """Protocol for create/read/update/delete of typed resources.

    Operations report failure through OperationResult rather than raising.
    A resource the provider no longer has is reported with not_found=True.
    """

    def supports(self, type_: str) -> bool:
        """True if this provider manages resources of type_."""

    def required_inputs(self, type_: str) -> frozenset:
        """Input properties that must be declared for type_."""

    def replace_on(self, type_: str) -> frozenset:
        """Input properties whose change forces delete-then-create."""

    def create(self, type_: str, name: str, inputs: dict) -> OperationResult:
        """Create a resource; returns its physical id and outputs."""

    def read(self, type_: str, physical_id: str, outputs: dict) -> OperationResult:
        """Read current outputs of an existing resource."""

    def update(self, type_: str, physical_id: str, old_inputs: dict, new_inputs: dict) -> OperationResult:
        """Update a resource in place; returns its new outputs."""

    def delete(self, type_: str, physical_id: str, outputs: dict) -> OperationResult:
        """Delete a resource."""
