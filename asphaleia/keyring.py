"""Named, versioned store of secret key material."""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .crypto import RandomSource
from .error import KeyNotFound
from .secret import SecretMaterial

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class _DerivedKey:
    info: bytes
    length: int
    salt: bytes
    secret: SecretMaterial


@dataclass(eq=False)
class _KeyEntry:
    """A stored key and the named keys derived from it."""

    key: SecretMaterial
    derived: Dict[str, _DerivedKey] = field(default_factory=dict)

    def rotate(self, rng: Optional[RandomSource]) -> None:
        old = self.key
        self.key = SecretMaterial.generate(len(old), rng)
        for entry in self.derived.values():
            stale = entry.secret
            entry.secret = self.key.derive(entry.info, entry.length, salt=entry.salt)
            stale.zeroize()
        old.zeroize()

    def zeroize(self) -> None:
        self.key.zeroize()
        for entry in self.derived.values():
            entry.secret.zeroize()


class KeyRing:
    """
    Thread-safe key management keyed by (name, version).

    The keyring owns every SecretMaterial added to it and every key derived
    through add_derived(). Derived keys follow their parent: rotating the
    parent re-derives them from the new material, and replacing, removing
    or clearing the parent zeroizes them.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._keys: Dict[str, Dict[str, _KeyEntry]] = {}

    def _entry(self, name: str, version: str) -> _KeyEntry:
        try:
            return self._keys[name][version]
        except KeyError:
            raise KeyNotFound(name, version)

    def add(self, name: str, version: str, secret: SecretMaterial) -> None:
        with self._lock:
            versions = self._keys.setdefault(name, {})
            previous = versions.get(version)
            if previous is not None and previous.key is secret:
                return
            versions[version] = _KeyEntry(secret)
        if previous is not None:
            previous.zeroize()
        logger.debug(f"Keyring stored {name}@{version}")

    def generate(self, name: str, version: str, length: int = 32, rng: Optional[RandomSource] = None) -> SecretMaterial:
        secret = SecretMaterial.generate(length, rng)
        self.add(name, version, secret)
        return secret

    def get(self, name: str, version: str) -> SecretMaterial:
        """Borrow a stored key; the keyring keeps ownership."""
        with self._lock:
            return self._entry(name, version).key

    def latest(self, name: str) -> Tuple[str, SecretMaterial]:
        """Most recently added version of a key."""
        with self._lock:
            versions = self._keys.get(name)
            if not versions:
                raise KeyNotFound(name)
            version = next(reversed(list(versions)))
            return version, versions[version].key

    def remove(self, name: str, version: str) -> None:
        with self._lock:
            entry = self._entry(name, version)
            versions = self._keys[name]
            del versions[version]
            if not versions:
                del self._keys[name]
        entry.zeroize()
        logger.debug(f"Keyring removed {name}@{version}")

    def add_derived(
        self,
        name: str,
        version: str,
        label: str,
        info: bytes,
        length: int = 32,
        salt: bytes = b"",
    ) -> SecretMaterial:
        """
        Derive a key from (name, version) and store it under ``label``.

        The derived key is borrowed; an existing key under the same label
        is zeroized and replaced.
        """
        with self._lock:
            entry = self._entry(name, version)
            secret = entry.key.derive(info, length, salt=salt)
            previous = entry.derived.get(label)
            entry.derived[label] = _DerivedKey(info=bytes(info), length=length, salt=bytes(salt), secret=secret)
        if previous is not None:
            previous.secret.zeroize()
        logger.debug(f"Keyring derived {name}@{version}/{label}")
        return secret

    def get_derived(self, name: str, version: str, label: str) -> SecretMaterial:
        with self._lock:
            entry = self._entry(name, version)
            try:
                return entry.derived[label].secret
            except KeyError:
                raise KeyNotFound(f"{name}/{label}", version)

    def list_derived(self, name: str, version: str) -> List[str]:
        with self._lock:
            return sorted(self._entry(name, version).derived)

    def rotate(self, rng: Optional[RandomSource] = None) -> None:
        """Replace every key with fresh random material and re-derive its derived keys."""
        with self._lock:
            for versions in self._keys.values():
                for entry in versions.values():
                    entry.rotate(rng)
            count = sum(len(v) for v in self._keys.values())
        logger.debug(f"Keyring rotated {count} key(s)")

    def list_keys(self) -> List[Tuple[str, List[str]]]:
        with self._lock:
            return [(name, list(versions)) for name, versions in sorted(self._keys.items())]

    def clear(self) -> None:
        with self._lock:
            for versions in self._keys.values():
                for entry in versions.values():
                    entry.zeroize()
            self._keys.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._keys.values())

    def __enter__(self) -> "KeyRing":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.clear()
