"""Catalog of downloadable GGUF models and the files on disk."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, List, Optional

import requests

from offline_doctor.core.errors import DownloadError, NotFound, StorageError
from offline_doctor.core.schemas import ModelInfo

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

CHUNK_SIZE = 1024 * 1024

_CATALOG = [
    {
        "name": "Llama 3.2 3B Instruct (Q4)",
        "size": 2_100_000_000,
        "description": "Compact model suitable for general medical queries",
        "download_url": "https://huggingface.co/bartowski/Llama-3.2-3B-Instruct-GGUF/resolve/main/Llama-3.2-3B-Instruct-Q4_K_M.gguf",
        "filename": "llama-3.2-3b-instruct-q4.gguf",
    },
    {
        "name": "Llama 3.1 8B Instruct (Q4)",
        "size": 4_700_000_000,
        "description": "Higher quality model for complex medical reasoning",
        "download_url": "https://huggingface.co/bartowski/Meta-Llama-3.1-8B-Instruct-GGUF/resolve/main/Meta-Llama-3.1-8B-Instruct-Q4_K_M.gguf",
        "filename": "llama-3.1-8b-instruct-q4.gguf",
    },
    {
        "name": "OpenBioLLM 8B (Q4)",
        "size": 4_800_000_000,
        "description": "Medical-specific model trained on biomedical literature",
        "download_url": "https://huggingface.co/aaditya/OpenBioLLM-Llama3-8B-GGUF/resolve/main/openbiollm-llama3-8b.Q4_K_M.gguf",
        "filename": "openbiollm-llama3-8b-q4.gguf",
    },
]


class ModelCatalog:
    """Model files under one directory."""

    def __init__(self, models_dir: Path) -> None:
        self.models_dir = models_dir
        self.models_dir.mkdir(parents=True, exist_ok=True)

    def model_path(self, filename: str) -> Path:
        """Path for `filename` inside the models directory."""
        if not filename or Path(filename).name != filename or filename in (".", ".."):
            raise NotFound(f"Invalid model filename: {filename!r}")
        return self.models_dir / filename

    def is_downloaded(self, filename: str) -> bool:
        return self.model_path(filename).exists()

    def available_models(self) -> List[ModelInfo]:
        return [ModelInfo(**entry, is_downloaded=self.is_downloaded(entry["filename"])) for entry in _CATALOG]

    def find(self, filename: str) -> ModelInfo:
        for model in self.available_models():
            if model.filename == filename:
                return model
        raise NotFound(f"Unknown model: {filename}")

    def downloaded_models(self) -> List[ModelInfo]:
        return [m for m in self.available_models() if m.is_downloaded]

    def default_model_path(self) -> Optional[Path]:
        """First downloaded model in catalog order (smaller models first)."""
        downloaded = self.downloaded_models()
        if not downloaded:
            return None
        return self.model_path(downloaded[0].filename)

    def delete_model(self, filename: str) -> None:
        path = self.model_path(filename)
        if not path.exists():
            return
        try:
            path.unlink()
        except OSError as e:
            raise StorageError(f"Failed to delete model {path}: {e}") from e
        logger.info("Deleted model %s", path)

    async def download_model(self, model: ModelInfo, progress: Optional[ProgressCallback] = None) -> Path:
        """Stream `model` to disk; returns the existing path if already present."""
        path = self.model_path(model.filename)
        if path.exists():
            return path

        logger.info("Downloading model: %s", model.name)
        await asyncio.to_thread(self._download, model.download_url, path, progress)
        logger.info("Model downloaded successfully: %s", path)
        return path

    def _download(self, url: str, path: Path, progress: Optional[ProgressCallback]) -> None:
        partial = path.with_name(path.name + ".part")
        try:
            with requests.get(url, stream=True, timeout=30) as response:
                if not 200 <= response.status_code < 300:
                    raise DownloadError(f"Failed to download model: HTTP {response.status_code}")

                total = int(response.headers.get("Content-Length") or 0)
                downloaded = 0
                with open(partial, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        fh.write(chunk)
                        downloaded += len(chunk)
                        if progress is not None:
                            progress(downloaded, total)
            partial.replace(path)
        except requests.RequestException as e:
            raise DownloadError(f"Failed to download model: {e}") from e
        except OSError as e:
            raise DownloadError(f"Failed to write model file {path}: {e}") from e
        finally:
            if partial.exists():
                partial.unlink()
