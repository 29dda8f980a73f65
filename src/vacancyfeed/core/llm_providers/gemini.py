from __future__ import annotations

import os
from typing import Any, Dict, Optional, Tuple

from .base import ProviderInterface

_DEFAULT_ENVS = ["GEMINI_API_KEY", "GOOGLE_API_KEY"]


class GeminiProvider(ProviderInterface):
    name = "gemini"

    def ready(self, cfg: Dict[str, Any]) -> bool:
        envs = cfg.get("api_key_envs") or _DEFAULT_ENVS
        return any(os.getenv(env) for env in envs)

    def call_json(
        self,
        *,
        model: str,
        temperature: float,
        timeout_sec: int,
        system_prompt: str,
        user_prompt: str,
        response_schema: Optional[Dict[str, Any]],
        cfg: Dict[str, Any],
    ) -> Tuple[str, Dict[str, int]]:
        from google import genai

        api_key = next((os.getenv(env) for env in cfg.get("api_key_envs") or _DEFAULT_ENVS if os.getenv(env)), "")
        client = genai.Client(api_key=api_key) if api_key else genai.Client()

        config: Dict[str, Any] = {
            "temperature": float(temperature),
            "system_instruction": system_prompt,
            "response_mime_type": "application/json",
        }
        if response_schema and bool(cfg.get("use_schema", False)):
            config["response_json_schema"] = response_schema

        resp = client.models.generate_content(model=model, contents=user_prompt, config=config)

        content = getattr(resp, "text", "") or ""
        usage: Dict[str, int] = {}
        u = getattr(resp, "usage_metadata", None)
        if u:
            usage = {
                "input": int(getattr(u, "prompt_token_count", 0) or 0),
                "output": int(getattr(u, "candidates_token_count", 0) or 0),
                "total": int(getattr(u, "total_token_count", 0) or 0),
            }
        return content.strip(), usage
