"""Input values and deferred outputs for stack resources.

Resource inputs are value trees built from three variants:
- Literal: a value known at declaration time
- Reference: an output attribute of another resource
- Combine: a transformation applied to several values once all are known

Evaluating a value tree against an OutputRegistry yields a Deferred that
resolves when every output it references has resolved, or is poisoned as
soon as one of them is.
"""

import hashlib
import json
import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from config import ConfigError

logger = logging.getLogger(__name__)

PENDING = 'pending'
RESOLVED = 'resolved'
POISONED = 'poisoned'

SECRET_MARKER = '__secret__'

# ${resource.attribute} with optional .key / [index] path segments
_REF_PATTERN = re.compile(r'\$\{([A-Za-z0-9_-]+)\.([^}]+)\}')
_PATH_PATTERN = re.compile(r'([^.\[\]]+)|\[(\d+)\]')


class DeferredError(Exception):
    """A deferred value was settled twice, or a value was read that is not available."""


class Secret:
    """Opaque wrapper for a sensitive value.

    str() and repr() are masked. Persisted forms carry only a SHA-256 digest.
    """

    __slots__ = ('_plaintext',)

    def __init__(self, plaintext: str):
        self._plaintext = plaintext

    def reveal(self) -> str:
        return self._plaintext

    @property
    def digest(self) -> str:
        return hashlib.sha256(self._plaintext.encode('utf-8')).hexdigest()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Secret) and other.digest == self.digest

    def __hash__(self) -> int:
        return hash(self.digest)

    def __str__(self) -> str:
        return '[secret]'

    def __repr__(self) -> str:
        return "Secret('[secret]')"


class SealedSecret(Secret):
    """A secret known only by the digest recorded in state.

    It snapshots and compares like the original Secret, but its plaintext
    cannot be revealed.
    """

    __slots__ = ('_digest',)

    def __init__(self, digest: str):
        super().__init__('')
        self._digest = digest

    def reveal(self) -> str:
        raise DeferredError("secret value is not recoverable from state (only its digest is recorded)")

    @property
    def digest(self) -> str:
        return self._digest


class _Unknown:
    """Placeholder for a value that cannot be known during a preview."""

    _instance: Optional['_Unknown'] = None

    def __new__(cls) -> '_Unknown':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '<unknown>'


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Reference:
    """The eventual value of `attribute` (then `path`) of resource `resource`."""
    resource: str
    attribute: str
    path: tuple = ()

    def __str__(self) -> str:
        suffix = ''.join(f'[{p}]' if isinstance(p, int) else f'.{p}' for p in self.path)
        return f'${{{self.resource}.{self.attribute}{suffix}}}'


@dataclass(frozen=True, eq=False)
class Combine:
    """fn(*resolved_inputs), available once every input has resolved."""
    inputs: tuple
    fn: Callable[..., Any]
    label: str = 'combine'


class Deferred:
    """Single-resolution future for an eventually-known value.

    Settles exactly once, either resolved with a value or poisoned with a
    reason. Callbacks registered with on_settle() run once on settlement,
    or immediately if already settled.
    """

    def __init__(self, label: str = ''):
        self.label = label
        self._status = PENDING
        self._value: Any = None
        self._reason: Optional[str] = None
        self._callbacks: list[Callable[['Deferred'], None]] = []
        self._lock = threading.Lock()

    @classmethod
    def of(cls, value: Any, label: str = '') -> 'Deferred':
        d = cls(label)
        d.resolve(value)
        return d

    @classmethod
    def failed(cls, reason: str, label: str = '') -> 'Deferred':
        d = cls(label)
        d.poison(reason)
        return d

    @property
    def status(self) -> str:
        return self._status

    @property
    def is_pending(self) -> bool:
        return self._status == PENDING

    @property
    def is_resolved(self) -> bool:
        return self._status == RESOLVED

    @property
    def is_poisoned(self) -> bool:
        return self._status == POISONED

    @property
    def value(self) -> Any:
        if self._status != RESOLVED:
            raise DeferredError(f"Deferred '{self.label}' is {self._status}, not resolved")
        return self._value

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def resolve(self, value: Any) -> None:
        self._settle(RESOLVED, value, None)

    def poison(self, reason: str) -> None:
        self._settle(POISONED, None, reason)

    def _settle(self, status: str, value: Any, reason: Optional[str]) -> None:
        with self._lock:
            if self._status != PENDING:
                raise DeferredError(f"Deferred '{self.label}' already {self._status}")
            self._status = status
            self._value = value
            self._reason = reason
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)

    def on_settle(self, callback: Callable[['Deferred'], None]) -> None:
        with self._lock:
            if self._status == PENDING:
                self._callbacks.append(callback)
                return
        callback(self)

    def map(self, fn: Callable[[Any], Any], label: Optional[str] = None) -> 'Deferred':
        """Derive a deferred holding fn(value).

        A poisoned source poisons the result. An exception raised by fn
        poisons the result with the label and the exception text.
        """
        out = Deferred(label or self.label)

        def _done(src: 'Deferred') -> None:
            if src.is_poisoned:
                out.poison(src.reason or 'upstream poisoned')
                return
            try:
                result = fn(src.value)
            except Exception as e:
                out.poison(f"{out.label}: {e}")
                return
            out.resolve(result)

        self.on_settle(_done)
        return out

    apply = map

    @staticmethod
    def all(*deferreds: 'Deferred', label: str = 'all') -> 'Deferred':
        """Combine deferreds into one resolving to the list of their values."""
        out = Deferred(label)
        if not deferreds:
            out.resolve([])
            return out

        lock = threading.Lock()
        remaining = [len(deferreds)]
        done = [False]

        def _done(src: 'Deferred') -> None:
            with lock:
                if done[0]:
                    return
                if src.is_poisoned:
                    done[0] = True
                    poisoned = True
                else:
                    remaining[0] -= 1
                    poisoned = False
                    if remaining[0] == 0:
                        done[0] = True
                    else:
                        return
            if poisoned:
                out.poison(src.reason or 'upstream poisoned')
            else:
                out.resolve([d.value for d in deferreds])

        for d in deferreds:
            d.on_settle(_done)
        return out

    def __repr__(self) -> str:
        return f"Deferred({self.label}, {self._status})"


class OutputRegistry:
    """Deferred outputs keyed by (resource, attribute).

    Each resource is settled exactly once: with its output mapping when its
    operation completes, or poisoned when it fails or is skipped.
    """

    def __init__(self) -> None:
        self._deferreds: dict[tuple[str, str], Deferred] = {}
        self._settled: dict[str, tuple[str, Any]] = {}
        self._lock = threading.Lock()

    def output(self, resource: str, attribute: str) -> Deferred:
        with self._lock:
            key = (resource, attribute)
            if key in self._deferreds:
                return self._deferreds[key]
            d = Deferred(f'{resource}.{attribute}')
            self._deferreds[key] = d
            settled = self._settled.get(resource)
        if settled is not None:
            self._settle_one(d, resource, attribute, settled)
        return d

    def is_settled(self, resource: str) -> bool:
        return resource in self._settled

    def settle_resource(self, resource: str, outputs: Any) -> None:
        """Resolve every output of resource. outputs may be UNKNOWN."""
        self._settle(resource, (RESOLVED, outputs))

    def poison_resource(self, resource: str, reason: str) -> None:
        self._settle(resource, (POISONED, reason))

    def _settle(self, resource: str, settlement: tuple[str, Any]) -> None:
        with self._lock:
            if resource in self._settled:
                raise DeferredError(f"Outputs of '{resource}' already settled")
            self._settled[resource] = settlement
            pending = [(attr, d) for (res, attr), d in self._deferreds.items() if res == resource]
        for attribute, d in pending:
            self._settle_one(d, resource, attribute, settlement)

    @staticmethod
    def _settle_one(d: Deferred, resource: str, attribute: str,
                    settlement: tuple[str, Any]) -> None:
        kind, payload = settlement
        if kind == POISONED:
            d.poison(payload)
        elif payload is UNKNOWN:
            d.resolve(UNKNOWN)
        elif attribute in payload:
            d.resolve(payload[attribute])
        else:
            d.poison(f"Resource '{resource}' has no output '{attribute}'")


def _apply_path(value: Any, path: tuple) -> Any:
    for segment in path:
        if value is UNKNOWN:
            return UNKNOWN
        value = value[segment]
    return value


def evaluate(value: Any, registry: OutputRegistry) -> Deferred:
    """Turn a value tree into a Deferred resolved against registry."""
    if isinstance(value, Literal):
        return Deferred.of(value.value)
    if isinstance(value, Reference):
        d = registry.output(value.resource, value.attribute)
        if value.path:
            return d.map(lambda v: _apply_path(v, value.path), label=str(value))
        return d
    if isinstance(value, Combine):
        parts = [evaluate(v, registry) for v in value.inputs]

        def _combine(values: list) -> Any:
            if any(v is UNKNOWN for v in values):
                return UNKNOWN
            return value.fn(*values)

        return Deferred.all(*parts, label=value.label).map(_combine, label=value.label)
    raise TypeError(f"Not a value node: {value!r}")


def evaluate_properties(properties: dict, registry: OutputRegistry, label: str = '') -> Deferred:
    """Evaluate a property map into a Deferred dict."""
    keys = list(properties)
    parts = [evaluate(properties[k], registry) for k in keys]
    return Deferred.all(*parts, label=label).map(lambda vals: dict(zip(keys, vals)), label=label)


def collect_references(value: Any) -> list[Reference]:
    """All references embedded in a value tree, in first-seen order."""
    found: list[Reference] = []

    def _walk(node: Any) -> None:
        if isinstance(node, Reference):
            if node not in found:
                found.append(node)
        elif isinstance(node, Combine):
            for child in node.inputs:
                _walk(child)
        elif isinstance(node, dict):
            for child in node.values():
                _walk(child)

    _walk(value)
    return found


def contains_secret(value: Any) -> bool:
    if isinstance(value, Secret):
        return True
    if isinstance(value, dict):
        return any(contains_secret(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_secret(v) for v in value)
    return False


def reveal(value: Any) -> Any:
    """Copy of value with every Secret replaced by its plaintext."""
    if isinstance(value, Secret):
        return value.reveal()
    if isinstance(value, dict):
        return {k: reveal(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [reveal(v) for v in value]
    return value


def snapshot(value: Any) -> Any:
    """JSON-safe copy of value with secrets replaced by digest markers."""
    if isinstance(value, Secret):
        return {SECRET_MARKER: value.digest}
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, dict):
        return {str(k): snapshot(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [snapshot(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def restore(value: Any) -> Any:
    """Rebuild a snapshot: digest markers become SealedSecret."""
    if isinstance(value, dict):
        if set(value) == {SECRET_MARKER}:
            return SealedSecret(value[SECRET_MARKER])
        return {k: restore(v) for k, v in value.items()}
    if isinstance(value, list):
        return [restore(v) for v in value]
    return value


def contains_sealed(value: Any) -> bool:
    if isinstance(value, SealedSecret):
        return True
    if isinstance(value, dict):
        return any(contains_sealed(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_sealed(v) for v in value)
    return False


def _tainted(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Run fn on revealed inputs; keep the result secret if any input was one.

    A list result becomes a list of secrets, anything else a single Secret.
    """
    def _seal(item: Any) -> Secret:
        return Secret(item if isinstance(item, str) else json.dumps(item))

    def _wrapped(*args: Any) -> Any:
        result = fn(*reveal(list(args)))
        if contains_secret(list(args)):
            if isinstance(result, list):
                return [_seal(item) for item in result]
            return _seal(result)
        return result
    return _wrapped


def describe(value: Any) -> str:
    """Short human-readable rendering of a value tree (secrets masked)."""
    if isinstance(value, Literal):
        return json.dumps(snapshot(value.value)) if not isinstance(value.value, Secret) else '[secret]'
    if isinstance(value, Reference):
        return str(value)
    if isinstance(value, Combine):
        return f"{value.label}({', '.join(describe(v) for v in value.inputs)})"
    return repr(value)


def parse_reference(text: str) -> Optional[Reference]:
    """Parse '${name.attr[0].key}' into a Reference, or None if not a whole reference."""
    match = _REF_PATTERN.fullmatch(text)
    if not match:
        return None
    return _make_reference(match.group(1), match.group(2))


def _make_reference(resource: str, path_text: str) -> Reference:
    segments: list = []
    for key, index in _PATH_PATTERN.findall(path_text):
        segments.append(int(index) if index else key)
    if not segments or not isinstance(segments[0], str):
        raise ConfigError(f"Invalid reference '${{{resource}.{path_text}}}'")
    return Reference(resource, segments[0], tuple(segments[1:]))


def parse_value(raw: Any, secrets: Any = None, config: Optional[dict] = None) -> Any:
    """Turn a YAML value into a value tree.

    Args:
        raw: Parsed YAML value
        secrets: SecretStore for fn::secret lookups
        config: Plain configuration values for fn::config lookups

    Raises:
        ConfigError: On unknown functions or missing secrets/config keys
    """
    config = config or {}

    if isinstance(raw, str):
        return _parse_string(raw)

    if isinstance(raw, dict):
        if len(raw) == 1:
            (key, arg), = raw.items()
            if isinstance(key, str) and key.startswith('fn::'):
                return _parse_function(key, arg, secrets, config)
        keys = list(raw)
        values = [parse_value(raw[k], secrets, config) for k in keys]
        if all(isinstance(v, Literal) for v in values):
            return Literal({k: v.value for k, v in zip(keys, values)})
        return Combine(tuple(values), lambda *xs: dict(zip(keys, xs)), label='map')

    if isinstance(raw, list):
        values = [parse_value(item, secrets, config) for item in raw]
        if all(isinstance(v, Literal) for v in values):
            return Literal([v.value for v in values])
        return Combine(tuple(values), lambda *xs: list(xs), label='list')

    return Literal(raw)


def _parse_string(text: str) -> Any:
    ref = parse_reference(text)
    if ref is not None:
        return ref
    matches = list(_REF_PATTERN.finditer(text))
    if not matches:
        return Literal(text)

    parts: list = []
    pos = 0
    for match in matches:
        if match.start() > pos:
            parts.append(Literal(text[pos:match.start()]))
        parts.append(_make_reference(match.group(1), match.group(2)))
        pos = match.end()
    if pos < len(text):
        parts.append(Literal(text[pos:]))
    return Combine(tuple(parts), _tainted(lambda *xs: ''.join(str(x) for x in xs)),
                   label='interpolate')


def _parse_function(name: str, arg: Any, secrets: Any, config: dict) -> Any:
    if name == 'fn::secret':
        if secrets is None:
            raise ConfigError(f"fn::secret '{arg}' used but no secret store is configured")
        return Literal(Secret(secrets.require(str(arg))))

    if name == 'fn::config':
        if arg not in config:
            raise ConfigError(f"Missing required config value '{arg}'")
        return parse_value(config[arg], secrets, config)

    if name == 'fn::join':
        if not isinstance(arg, list) or len(arg) != 2:
            raise ConfigError("fn::join expects [delimiter, values]")
        delimiter = str(arg[0])
        items = parse_value(arg[1], secrets, config)
        return Combine((items,), _tainted(lambda vals: delimiter.join(str(v) for v in vals)),
                       label='join')

    if name == 'fn::split':
        if not isinstance(arg, list) or len(arg) not in (2, 3):
            raise ConfigError("fn::split expects [delimiter, value] or [delimiter, value, index]")
        delimiter = str(arg[0])
        target = parse_value(arg[1], secrets, config)
        if len(arg) == 3:
            index = int(arg[2])
            return Combine((target,), _tainted(lambda v: v.split(delimiter)[index]), label='split')
        return Combine((target,), _tainted(lambda v: v.split(delimiter)), label='split')

    if name == 'fn::select':
        if not isinstance(arg, list) or len(arg) != 2:
            raise ConfigError("fn::select expects [index, list]")
        index = int(arg[0])
        items = parse_value(arg[1], secrets, config)
        return Combine((items,), lambda vals: vals[index], label='select')

    if name == 'fn::json':
        target = parse_value(arg, secrets, config)
        return Combine((target,), _tainted(lambda v: json.dumps(v, sort_keys=False)),
                       label='json')

    raise ConfigError(f"Unknown function '{name}'")
