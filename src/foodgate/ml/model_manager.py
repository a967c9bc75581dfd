"""ONNX Runtime binding: locate, download, and open the classifier model.

``OnnxSessionFactory`` is the concrete runtime handed to
``OnnxInferenceEngine``. It resolves the model file (downloading it from the
HuggingFace Hub when a repository is configured), then creates an
``InferenceSession`` with the configured providers and threading.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from foodgate.errors import ModelLoadError

if TYPE_CHECKING:
    from foodgate.config import Settings

logger = logging.getLogger(__name__)


class OnnxSessionFactory:
    """Creates ONNX inference sessions for a model path."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    def __call__(self, model_path: Path) -> InferenceSession:
        path = self.ensure_model(model_path)
        return InferenceSession(
            str(path),
            sess_options=self._session_options,
            providers=self._providers,
        )

    def ensure_model(self, model_path: Path) -> Path:
        """Return a local model file, downloading it if a repository is configured.

        Raises:
            ModelLoadError: If the file does not exist and cannot be fetched.
        """
        path = Path(model_path)
        if path.is_file():
            return path

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise ModelLoadError(f"Model file not found: {path}")

        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=repo_id,
                    filename=self._settings.model_filename,
                    local_dir=str(path.parent),
                )
            )
        except Exception as exc:
            raise ModelLoadError(f"Failed to download {self._settings.model_filename} from {repo_id}: {exc}") from exc

        logger.info("Downloaded %s to %s", self._settings.model_filename, downloaded)
        return downloaded

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_cpu_mem_arena = True
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
