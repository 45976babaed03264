from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import numpy as np


class EmbeddingBackend(ABC):
    """Maps text to fixed-length float32 vectors.

    Single-owner resource: the embedding pipeline serializes every call,
    including query embeddings issued by retrieval.
    """

    @property
    @abstractmethod
    def dimensions(self) -> int:
        raise NotImplementedError

    @property
    @abstractmethod
    def model_version(self) -> str:
        """Identifier stored with each vector; vectors of other versions are not compared."""
        raise NotImplementedError

    @property
    @abstractmethod
    def is_loaded(self) -> bool:
        raise NotImplementedError

    @property
    def model_id(self) -> Optional[str]:
        return None

    @abstractmethod
    def load(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def embed(self, texts: list[str]) -> np.ndarray:
        """Return an ``(len(texts), dimensions)`` float32 array."""
        raise NotImplementedError


class EmbeddingProviderError(RuntimeError):
    pass
