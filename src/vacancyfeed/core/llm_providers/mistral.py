from __future__ import annotations

import os
from typing import Any, Dict, Optional, Tuple

import requests

from .base import ProviderInterface

DEFAULT_API_BASE = "https://api.mistral.ai/v1"


class MistralProvider(ProviderInterface):
    name = "mistral"

    def ready(self, cfg: Dict[str, Any]) -> bool:
        env_key = cfg.get("api_key_env", "MISTRAL_API_KEY")
        return bool(os.getenv(env_key))

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
        api_key = os.getenv(cfg.get("api_key_env", "MISTRAL_API_KEY"), "")
        api_base = (cfg.get("api_base") or DEFAULT_API_BASE).rstrip("/")
        url = f"{api_base}/chat/completions"

        payload: Dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": float(temperature),
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

        resp = requests.post(url, headers=headers, json=payload, timeout=timeout_sec)
        if resp.status_code >= 400:
            raise RuntimeError(f"Mistral HTTP {resp.status_code}: {resp.text[:300]}")
        data = resp.json()
        choices = data.get("choices") or []
        if not choices:
            raise RuntimeError("Mistral response missing choices")
        content = (choices[0].get("message") or {}).get("content") or ""

        usage = data.get("usage") or {}
        return (
            content.strip(),
            {
                "input": int(usage.get("prompt_tokens") or 0),
                "output": int(usage.get("completion_tokens") or 0),
                "total": int(usage.get("total_tokens") or 0),
            },
        )
