"""Pluggable generation backends.

This module provides a registry pattern for managing generators,
allowing runtime selection of different backends per artifact kind.
"""

from typing import Any, ClassVar

from .base import Generator
from .elevenlabs import ElevenLabsSpeechGenerator
from .gemini import GeminiPersonalizer

__all__ = [
    "ElevenLabsSpeechGenerator",
    "GeminiPersonalizer",
    "Generator",
    "GeneratorRegistry",
]


class GeneratorRegistry:
    """Registry for managing generators.

    This class maintains a registry of available generators,
    allowing registration and retrieval by name.
    """

    _generators: ClassVar[dict[str, type[Generator]]] = {}

    @classmethod
    def register(cls, name: str, generator_class: type[Generator]) -> None:
        """Register a generator.

        Args:
            name: Name to register the generator under
            generator_class: Class that implements Generator
        """
        cls._generators[name] = generator_class

    @classmethod
    def get(cls, name: str) -> type[Generator]:
        """Get a generator class by name.

        Raises:
            KeyError: If generator name not found
        """
        if name not in cls._generators:
            available = ", ".join(cls._generators.keys()) if cls._generators else "none"
            raise KeyError(
                f"Generator '{name}' not found. Available generators: {available}"
            )
        return cls._generators[name]

    @classmethod
    def create(cls, name: str, **kwargs: Any) -> Generator:
        """Instantiate a registered generator."""
        return cls.get(name)(**kwargs)

    @classmethod
    def names(cls) -> list[str]:
        return sorted(cls._generators)


# Register generators
GeneratorRegistry.register("elevenlabs", ElevenLabsSpeechGenerator)
GeneratorRegistry.register("gemini", GeminiPersonalizer)
