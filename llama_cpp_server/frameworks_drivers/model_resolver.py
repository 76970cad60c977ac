import os
from pathlib import Path


class ModelResolver:
    """
    Resolves model identifiers into the local .gguf file llama-server should load.
    """

    DEFAULT_REGISTRY = "TabbyML"
    GGML_MODEL_RELATIVE_PATH = Path("ggml") / "model.gguf"

    def __init__(self, model_root: str | Path | None = None):
        root = model_root or os.environ.get("LLAMA_CPP_MODEL_ROOT") or Path.home() / ".cache" / "llama-cpp-server" / "models"
        self.model_root = Path(root).expanduser()

    @staticmethod
    def parse_model_id(model_id: str) -> tuple[str, str]:
        """
        Split a model identifier into registry and model name.

        Supported formats:
        - 'registry/name' (e.g., 'TabbyML/StarCoder-1B')
        - 'name' (uses the default registry)

        Raises:
            ValueError: If the identifier is empty or malformed.
        """
        if not model_id or not model_id.strip():
            raise ValueError("Model identifier cannot be empty")

        parts = model_id.strip().split("/")
        if len(parts) == 1:
            return ModelResolver.DEFAULT_REGISTRY, parts[0]
        if len(parts) == 2 and all(parts):
            return parts[0], parts[1]
        raise ValueError(f"Invalid model identifier format: {model_id}")

    def resolve(self, model_id: str) -> Path:
        """
        Resolve a model identifier to a model file.

        An existing directory resolves to its ggml/model.gguf, an existing file is
        used as is, anything else is looked up in the local model cache.

        Raises:
            ValueError: If the identifier is malformed.
            FileNotFoundError: If the model is not available locally.
        """
        local = Path(model_id).expanduser()
        if local.is_dir():
            path = local / self.GGML_MODEL_RELATIVE_PATH
        elif local.is_file():
            return local
        else:
            registry, name = self.parse_model_id(model_id)
            path = self.model_root / registry / name / self.GGML_MODEL_RELATIVE_PATH

        if not path.is_file():
            raise FileNotFoundError(f"Model file for {model_id} not found at {path}")
        return path
