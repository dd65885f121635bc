"""Zeroizing container for raw key bytes."""

from typing import Optional

from .crypto import RandomSource, constant_time_eq, rand_bytes, zero_bytes
from .error import SecretDestroyed


class SecretMaterial:
    """
    Owned secret byte buffer.

    The buffer is overwritten with zeros when the owner calls zeroize(),
    leaves a ``with`` block (including on exceptions) or drops the last
    reference. Copying, pickling and ordinary equality are refused; use
    ct_equals() to compare.

    Note: Python doesn't guarantee memory clearing for intermediate
    ``bytes`` objects handed to primitive libraries, but the owned
    buffer is always overwritten.
    """

    __slots__ = ("_buf", "_destroyed", "__weakref__")

    def __init__(self, data):
        self._destroyed = True
        if isinstance(data, (int, str)):
            raise TypeError("SecretMaterial requires a bytes-like buffer")
        # Take ownership: a caller-supplied bytearray is wiped after copying
        self._buf = bytearray(data)
        if isinstance(data, bytearray):
            zero_bytes(data)
        self._destroyed = False

    @classmethod
    def create(cls, data) -> "SecretMaterial":
        return cls(data)

    @classmethod
    def generate(cls, length: int, rng: Optional[RandomSource] = None) -> "SecretMaterial":
        """Fresh random secret of the given length."""
        return cls(bytearray(rand_bytes(length, rng)))

    def expose(self) -> memoryview:
        """Read-only borrowed view; valid only while this object is alive."""
        if self._destroyed:
            raise SecretDestroyed("Secret material has been zeroized")
        return memoryview(self._buf).toreadonly()

    def derive(self, info: bytes, length: int, salt: bytes = b"") -> "SecretMaterial":
        """Expand this secret with HKDF-SHA256 into new secret material."""
        from .kdf import hkdf_expand_with_salt

        return SecretMaterial(bytearray(hkdf_expand_with_salt(self.expose(), salt, info, length)))

    def ct_equals(self, other: "SecretMaterial") -> bool:
        """Constant-time comparison."""
        if not isinstance(other, SecretMaterial):
            return False
        return constant_time_eq(self.expose(), other.expose())

    def zeroize(self) -> None:
        if not self._destroyed:
            zero_bytes(self._buf)
            self._destroyed = True

    @property
    def is_zeroized(self) -> bool:
        return self._destroyed

    def __len__(self) -> int:
        return len(self._buf)

    def __enter__(self) -> "SecretMaterial":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.zeroize()

    def __del__(self):
        self.zeroize()

    def __eq__(self, other):
        raise TypeError("SecretMaterial does not support ==; use ct_equals()")

    def __ne__(self, other):
        raise TypeError("SecretMaterial does not support !=; use ct_equals()")

    __hash__ = None

    def __copy__(self):
        raise TypeError("SecretMaterial cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("SecretMaterial cannot be copied")

    def __reduce__(self):
        raise TypeError("SecretMaterial cannot be pickled")

    def __bytes__(self):
        raise TypeError("SecretMaterial cannot be converted to bytes; use expose()")

    def __repr__(self) -> str:
        state = "zeroized" if self._destroyed else f"{len(self._buf)} bytes"
        return f"SecretMaterial(<redacted, {state}>)"
