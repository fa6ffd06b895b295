"""File-backed simulated provider.

Implements the provider contract for every type in the catalog without
calling a cloud API: physical ids, ARNs, endpoints and addresses are
generated locally and the resulting inventory is kept in a JSON file, so
previews, local runs and tests exercise the full create/update/delete
lifecycle.
"""

import ipaddress
import json
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Optional

from common import OperationResult
from providers.catalog import CATALOG, ResourceType
from stack_opr.values import reveal, snapshot

logger = logging.getLogger(__name__)

INVENTORY_FILE = 'local-provider.json'


class LocalProvider:
    """Simulated cloud keeping its inventory in memory and optionally on disk.

    Attributes:
        inventory_path: JSON file holding provisioned resources (None = memory only)
    """

    def __init__(self, inventory_path: Optional[Path] = None):
        self.inventory_path = inventory_path
        self._lock = threading.Lock()
        self._inventory: dict[str, dict] = {}
        if inventory_path is not None and inventory_path.exists():
            with open(inventory_path, encoding='utf-8') as f:
                self._inventory = json.load(f)

    def supports(self, type_: str) -> bool:
        return type_ in CATALOG

    def required_inputs(self, type_: str) -> frozenset:
        return CATALOG[type_].required

    def replace_on(self, type_: str) -> frozenset:
        return CATALOG[type_].replace_on

    @property
    def physical_ids(self) -> list[str]:
        with self._lock:
            return list(self._inventory)

    def create(self, type_: str, name: str, inputs: dict) -> OperationResult:
        start = time.time()
        rtype = CATALOG[type_]
        error = _check_inputs(rtype, inputs)
        if error:
            return OperationResult(success=False, message=error, duration=time.time() - start)

        physical_id = f"{rtype.id_prefix}-{uuid.uuid4().hex[:17]}"
        outputs = self._outputs(rtype, name, physical_id, inputs)
        self._put(physical_id, type_, name, inputs, outputs)
        logger.debug(f"[local] Created {type_} {physical_id}")
        return OperationResult(
            success=True,
            message=f"Created {physical_id}",
            duration=time.time() - start,
            physical_id=physical_id,
            outputs=outputs,
        )

    def read(self, type_: str, physical_id: str, outputs: dict) -> OperationResult:
        start = time.time()
        with self._lock:
            entry = self._inventory.get(physical_id)
        if entry is None:
            return _not_found(type_, physical_id, start)
        return OperationResult(
            success=True,
            message=f"Read {physical_id}",
            duration=time.time() - start,
            physical_id=physical_id,
            outputs=entry['outputs'],
        )

    def update(self, type_: str, physical_id: str, old_inputs: dict, new_inputs: dict) -> OperationResult:
        start = time.time()
        with self._lock:
            entry = self._inventory.get(physical_id)
        if entry is None:
            return _not_found(type_, physical_id, start)

        rtype = CATALOG[type_]
        error = _check_inputs(rtype, new_inputs)
        if error:
            return OperationResult(success=False, message=error, duration=time.time() - start)

        outputs = self._outputs(rtype, entry['name'], physical_id, new_inputs)
        self._put(physical_id, type_, entry['name'], new_inputs, outputs)
        logger.debug(f"[local] Updated {type_} {physical_id}")
        return OperationResult(
            success=True,
            message=f"Updated {physical_id}",
            duration=time.time() - start,
            physical_id=physical_id,
            outputs=outputs,
        )

    def delete(self, type_: str, physical_id: str, outputs: dict) -> OperationResult:
        start = time.time()
        with self._lock:
            entry = self._inventory.pop(physical_id, None)
            if entry is not None:
                self._save()
        if entry is None:
            return _not_found(type_, physical_id, start)
        logger.debug(f"[local] Deleted {type_} {physical_id}")
        return OperationResult(success=True, message=f"Deleted {physical_id}", duration=time.time() - start)

    def _outputs(self, rtype: ResourceType, name: str, physical_id: str, inputs: dict) -> dict:
        outputs: dict[str, Any] = dict(inputs)
        outputs.update(rtype.computed(name, physical_id, reveal(inputs)))
        outputs['id'] = physical_id
        outputs['urn'] = f'urn:airstack::{rtype.token}::{name}'
        return outputs

    def _put(self, physical_id: str, type_: str, name: str, inputs: dict, outputs: dict) -> None:
        with self._lock:
            self._inventory[physical_id] = {
                'type': type_,
                'name': name,
                'inputs': snapshot(inputs),
                'outputs': snapshot(outputs),
            }
            self._save()

    def _save(self) -> None:
        if self.inventory_path is None:
            return
        self.inventory_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.inventory_path, 'w', encoding='utf-8') as f:
            json.dump(self._inventory, f, indent=2)


def _not_found(type_: str, physical_id: str, start: float) -> OperationResult:
    return OperationResult(
        success=False,
        message=f"{type_} {physical_id} not found",
        duration=time.time() - start,
        not_found=True,
    )


def _check_inputs(rtype: ResourceType, inputs: dict) -> Optional[str]:
    """Provider-side validation of input values."""
    missing = sorted(k for k in rtype.required if inputs.get(k) in (None, '', []))
    if missing:
        return f"{rtype.token}: missing value for {', '.join(missing)}"
    cidr = inputs.get('cidrBlock')
    if cidr is not None:
        try:
            ipaddress.ip_network(str(cidr))
        except ValueError as e:
            return f"{rtype.token}: invalid cidrBlock: {e}"
    return None
