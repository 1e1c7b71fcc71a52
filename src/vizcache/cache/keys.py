"""Deterministic cache key derivation."""

import hashlib
import json
import math
from collections.abc import Mapping
from typing import Any

KEY_LENGTH = 32  # hex chars, 128 bits


class KeyDeriver:
    """Turns a generation request into a fixed-length cache key.

    Requests are reduced to their output-affecting fields (via
    ``key_fields()`` or a plain mapping), canonicalized, serialized as JSON
    with sorted names and hashed with SHA-256. Canonicalization makes these
    equivalent:

    - field order
    - an unset optional field and one set to its default value
    - ``None``, empty strings and empty containers
    - ``1`` and ``1.0``
    - leading, trailing and repeated whitespace in strings

    Example:
        deriver = KeyDeriver("speech", defaults=SpeechRequest.KEY_DEFAULTS)
        key = deriver.derive(SpeechRequest(text="Breathe deeply"))
    """

    def __init__(
        self,
        namespace: str,
        defaults: Mapping[str, Any] | None = None,
        length: int = KEY_LENGTH,
    ) -> None:
        """Initialize key deriver.

        Args:
            namespace: Keeps keys of different artifact kinds disjoint
            defaults: Field values treated as equivalent to "unset"
            length: Number of hex characters kept from the digest (32-64)

        Raises:
            ValueError: If namespace is empty or length out of range
        """
        if not namespace:
            raise ValueError("namespace cannot be empty")
        if not 32 <= length <= 64:
            raise ValueError(f"length must be between 32 and 64, got {length}")

        self.namespace = namespace
        self.length = length
        self._defaults = {
            name: self._canonical(value) for name, value in (defaults or {}).items()
        }

    def derive(self, request: Any) -> str:
        """Derive the cache key for a request.

        Args:
            request: Object exposing ``key_fields()`` or a mapping of fields

        Returns:
            Lowercase hex key of ``self.length`` characters

        Raises:
            TypeError: If request has no key fields or holds unsupported values
        """
        material = self.canonical_material(request)
        digest = hashlib.sha256(material.encode("utf-8")).hexdigest()
        return digest[: self.length]

    def canonical_material(self, request: Any) -> str:
        """Return the exact string that gets hashed (useful for debugging)."""
        if isinstance(request, Mapping):
            fields = request
        elif hasattr(request, "key_fields"):
            fields = request.key_fields()
        else:
            raise TypeError(
                f"Cannot derive key from {type(request).__name__}: "
                "expected a mapping or an object with key_fields()"
            )

        canonical: dict[str, Any] = {}
        for name, value in fields.items():
            value = self._canonical(value)
            if value is None:
                continue
            if name in self._defaults and self._defaults[name] == value:
                continue
            canonical[name] = value

        return json.dumps(
            [self.namespace, canonical],
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )

    def _canonical(self, value: Any) -> Any:
        """Reduce a value to its canonical JSON-safe form, or None if unset."""
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            number = float(value)
            if not math.isfinite(number):
                raise TypeError(f"Non-finite number in key material: {value!r}")
            # 1 and 1.0 both serialize as 1.0; strings stay quoted
            return number
        if isinstance(value, str):
            text = " ".join(value.split())
            return text or None
        if isinstance(value, Mapping):
            items = {}
            for name, item in value.items():
                item = self._canonical(item)
                if item is not None:
                    items[str(name)] = item
            return items or None
        if isinstance(value, (list, tuple)):
            items = [self._canonical(item) for item in value]
            return items or None
        raise TypeError(f"Unsupported value in key material: {type(value).__name__}")
