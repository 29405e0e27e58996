from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator
from typing import Any

from agentcrew.generators.base import TextGenerator


def _slug(value: str, limit: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:limit].strip("-") or "change"


class TemplateGenerator(TextGenerator):
    """Deterministic offline generator.

    Narration echoes the caller-supplied ``summary``; structured requests get
    well-formed payloads shaped by the request ``kind``.
    """

    name = "template"

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt
        kind = context.get("kind", "narration")
        if kind == "verdict":
            reviewer = context.get("reviewer", "Reviewer")
            payload: dict[str, Any] = {
                "approved": True,
                "changesRequested": False,
                "body": f"## Review by {reviewer}\n\nLooks good to me.",
                "summary": "Approved - implementation looks good",
            }
            yield json.dumps(payload)
            return
        if kind == "implementation":
            title = str(context.get("task_title", "change"))
            slug = _slug(title)
            payload = {
                "files": [
                    {
                        "path": f"src/{slug.replace('-', '_')}.py",
                        "content": f'"""{title}."""\n',
                    }
                ],
                "summary": f"Implemented {title}",
                "integrationPoints": [],
            }
            yield json.dumps(payload)
            return
        summary = str(context.get("summary") or "").strip()
        speaker = str(context.get("speaker") or "").strip()
        if summary:
            yield summary
        elif speaker:
            yield f"{speaker} here, making progress."
