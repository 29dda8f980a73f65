from __future__ import annotations

import os
from typing import Any, Dict, Optional, Tuple

from .base import ProviderInterface


def _usage_value(u: Any, key: str) -> int:
    val = getattr(u, key, None)
    if val is None and isinstance(u, dict):
        val = u.get(key)
    return int(val or 0)


class OpenAIProvider(ProviderInterface):
    name = "openai"

    def ready(self, cfg: Dict[str, Any]) -> bool:
        env_key = cfg.get("api_key_env", "OPENAI_API_KEY")
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
        from openai import OpenAI

        api_key = os.getenv(cfg.get("api_key_env", "OPENAI_API_KEY"), "")
        api_base = cfg.get("api_base") or None
        client = OpenAI(api_key=api_key, base_url=api_base) if api_base else OpenAI(api_key=api_key)

        resp = client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            timeout=timeout_sec,
            response_format={"type": "json_object"},
        )

        content = resp.choices[0].message.content or ""
        usage: Dict[str, int] = {}
        u = getattr(resp, "usage", None)
        if u:
            usage = {
                "input": _usage_value(u, "prompt_tokens"),
                "output": _usage_value(u, "completion_tokens"),
                "total": _usage_value(u, "total_tokens"),
            }
        return content.strip(), usage
