from __future__ import annotations

import logging
import os
import threading
import time
from typing import Optional

import numpy as np

from sidecar.services.embeddings.base import EmbeddingBackend, EmbeddingProviderError
from sidecar.services.pipeline_config import EmbeddingConfig


class SentenceTransformerBackend(EmbeddingBackend):
    """Local sentence-transformers model (MiniLM / BGE-small class, 384 dims by default)."""

    def __init__(self, config: EmbeddingConfig, cache_dir: Optional[str] = None) -> None:
        self._config = config
        self._cache_dir = cache_dir
        self._model = None
        self._load_lock = threading.Lock()
        self._logger = logging.getLogger("sidecar.embeddings.sentence_transformer")

    @property
    def dimensions(self) -> int:
        if self._model is not None:
            return int(self._model.get_sentence_embedding_dimension())
        return self._config.dimensions

    @property
    def model_version(self) -> str:
        return self._config.model_name

    @property
    def model_id(self) -> Optional[str]:
        return self._config.model_name

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def load(self) -> None:
        with self._load_lock:
            if self._model is not None:
                return
            # Heavy import (torch); keep it off the boot path
            os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")
            from sentence_transformers import SentenceTransformer

            self._logger.info(
                "Loading embedding model: %s device=%s",
                self._config.model_name,
                self._config.device,
            )
            start_time = time.perf_counter()
            try:
                model = SentenceTransformer(
                    self._config.model_name,
                    device=self._config.device,
                    cache_folder=self._cache_dir,
                )
            except Exception as exc:
                self._logger.exception("Embedding model load failed: %s", exc)
                raise EmbeddingProviderError(f"Failed to load {self._config.model_name}") from exc

            dim = int(model.get_sentence_embedding_dimension())
            if dim != self._config.dimensions:
                self._logger.warning(
                    "Embedding model %s reports %d dims, config says %d",
                    self._config.model_name,
                    dim,
                    self._config.dimensions,
                )
            self._model = model
            self._logger.info("Embedding model loaded in %.2fs", time.perf_counter() - start_time)

    def embed(self, texts: list[str]) -> np.ndarray:
        if self._model is None:
            raise EmbeddingProviderError("Embedding model not loaded")
        if not texts:
            return np.zeros((0, self.dimensions), dtype=np.float32)
        vectors = self._model.encode(
            texts,
            batch_size=self._config.batch_limit,
            normalize_embeddings=True,
            show_progress_bar=False,
            convert_to_numpy=True,
        )
        return np.asarray(vectors, dtype=np.float32)
