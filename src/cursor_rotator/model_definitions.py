import json
import os
import time
import logging
from typing import Any, Dict, List, Optional

lib_logger = logging.getLogger("cursor_rotator")
lib_logger.propagate = False
if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())

DEFAULT_MODELS = [
    "claude-3-5-sonnet-20241022",
    "claude-3-opus",
    "claude-3.5-haiku",
    "cursor-small",
    "gemini-exp-1206",
    "gpt-4",
    "gpt-4o",
    "gpt-4o-mini",
    "o1-mini",
    "o1-preview",
]

OWNED_BY = "cursor"


class ModelDefinitions:
    """
    Static model catalog.
    Format: CURSOR_MODELS=["model1", "model2"] or CURSOR_MODELS=model1,model2
    """

    def __init__(self, env_var: str = "CURSOR_MODELS"):
        self.env_var = env_var
        self.models: List[str] = []
        self._load_definitions()

    def _load_definitions(self):
        """Load the model list from the environment, falling back to the defaults."""
        env_value = os.getenv(self.env_var, "").strip()
        if not env_value:
            self.models = list(DEFAULT_MODELS)
            return

        if env_value.startswith("["):
            try:
                models_json = json.loads(env_value)
                if isinstance(models_json, list):
                    self.models = [str(m) for m in models_json if m]
                    lib_logger.info(f"Loaded {len(self.models)} models from {self.env_var}")
                    return
            except (json.JSONDecodeError, TypeError) as e:
                lib_logger.warning(f"Invalid JSON in {self.env_var}: {e}")
            self.models = list(DEFAULT_MODELS)
            return

        self.models = [m.strip() for m in env_value.split(",") if m.strip()]
        lib_logger.info(f"Loaded {len(self.models)} models from {self.env_var}")

    def get_model_ids(self) -> List[str]:
        return list(self.models)

    def as_model_cards(self) -> List[Dict[str, Any]]:
        created = int(time.time())
        return [
            {"id": model_id, "object": "model", "created": created, "owned_by": OWNED_BY}
            for model_id in self.models
        ]

    def get_model_card(self, model_id: str) -> Optional[Dict[str, Any]]:
        if model_id not in self.models:
            return None
        return {"id": model_id, "object": "model", "created": int(time.time()), "owned_by": OWNED_BY}

    def reload_definitions(self):
        self._load_definitions()
