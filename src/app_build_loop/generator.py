from __future__ import annotations

import json
import logging
import re
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from deepagents import create_deep_agent
from deepagents.backends import FilesystemBackend
from pydantic import BaseModel, Field, ValidationError

from .llm import get_chat_model
from .models import FeatureSpec
from .settings import RuntimeSettings
from .tools import evaluate_design_tool, record_ledger_note_tool, scan_placeholders_tool

if TYPE_CHECKING:
    from .target import BuildContext

logger = logging.getLogger(__name__)

BUILD_RULES = (
    "You build one feature of a production web application inside an existing scaffold. "
    "Rules: every read and write goes through the data access layer backed by the database; "
    "never ship arrays of fixed records, sample data, TODO/FIXME markers, 'coming soon' or lorem ipsum copy, "
    "or branches that report 'not implemented'. "
    "User-facing pages need a dominant heading, at least two font weights, text/background contrast of at "
    "least 4.5:1 and responsive breakpoints. "
    "Before answering, call `scan_placeholders` on every file you wrote and fix all findings; call "
    "`evaluate_design` on UI files and fix every failing criterion. "
    "Finish with a single JSON object: "
    '{"paths": [workspace-relative file paths you wrote], "decisions": {key: value}, "notes": "short summary"}.'
)


class GeneratedArtifacts(BaseModel):
    paths: list[str] = Field(default_factory=list)
    decisions: dict[str, Any] = Field(default_factory=dict)
    notes: str = ""


class ArtifactGenerator(Protocol):
    def generate(
        self,
        feature: FeatureSpec,
        kind: str,
        context: BuildContext,
        workspace_root: Path,
    ) -> GeneratedArtifacts: ...


def _content_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                chunks.append(text_value if isinstance(text_value, str) else _content_to_text(item.get("content", "")))
            else:
                chunks.append(str(item))
        return "\n".join(chunk for chunk in chunks if chunk.strip())
    if isinstance(content, dict):
        return _content_to_text(content.get("content", json.dumps(content, sort_keys=True)))
    return str(content)


def extract_agent_text(response: Any) -> str:
    """Final text of an agent response (last message of a ``messages`` state)."""
    if isinstance(response, str):
        return response
    if isinstance(response, dict):
        messages = response.get("messages")
        if isinstance(messages, list) and messages:
            return extract_agent_text(messages[-1])
        if "content" in response:
            return _content_to_text(response["content"])
    content = getattr(response, "content", None)
    if content is not None:
        return _content_to_text(content)
    return _content_to_text(response)


def extract_json_payload(text: str) -> dict[str, Any]:
    """Pull the JSON object out of agent text: bare, fenced, or first-to-last brace.

    Raises:
        RuntimeError: If no JSON object can be found.
    """
    body = text.strip()
    if not body:
        raise RuntimeError("Agent returned empty output; expected JSON object")
    candidates = [body]
    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", body, flags=re.DOTALL)
    if fenced is not None:
        candidates.append(fenced.group(1))
    start, end = body.find("{"), body.rfind("}")
    if start != -1 and end > start:
        candidates.append(body[start : end + 1])
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            return payload
    preview = body[:220].replace("\n", " ")
    raise RuntimeError(f"Agent output did not contain a JSON object: {preview}")


def render_build_request(feature: FeatureSpec, kind: str, context: BuildContext) -> str:
    lines = [
        f"# Feature: {feature.name}",
        f"Artifact kind to produce: {kind}",
        f"Attempt: {context.attempt}",
        "",
        "## Description",
        feature.description or "(none)",
        "",
        "## Entities written",
        *(f"- {entity.name}({', '.join(entity.columns)})" for entity in feature.writes),
        "## Entities read",
        *(f"- {name}" for name in feature.reads),
        "## User-facing surfaces",
        *(f"- {surface}" for surface in feature.surfaces),
        "## Schema inventory",
        *(f"- {table}: {', '.join(columns)}" for table, columns in sorted(context.schema_inventory.items())),
        "## Architecture decisions",
        *(f"- {key}: {value}" for key, value in sorted(context.architecture_decisions.items())),
    ]
    if context.last_gate_result is not None and not context.last_gate_result.passed:
        result = context.last_gate_result
        lines += ["", "## Previous attempt failed", result.summary()]
        if result.hint:
            lines.append(f"Hint: {result.hint}")
        lines += [f"- {detail}" for detail in result.details]
    if context.ledger_excerpt:
        lines += ["", "## Recent notes", context.ledger_excerpt]
    return "\n".join(lines)


class DeepAgentArtifactGenerator:
    """Generate artifacts with a deep agent whose filesystem is the workspace."""

    def __init__(self, settings: RuntimeSettings | None = None, *, temperature: float = 0.0) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.temperature = temperature

    def generate(
        self,
        feature: FeatureSpec,
        kind: str,
        context: BuildContext,
        workspace_root: Path,
    ) -> GeneratedArtifacts:
        model = get_chat_model(self.settings, temperature=self.temperature)
        agent = create_deep_agent(
            model=model,
            tools=[scan_placeholders_tool, evaluate_design_tool, record_ledger_note_tool],
            backend=FilesystemBackend(root_dir=workspace_root, virtual_mode=True),
            system_prompt=BUILD_RULES,
            name=f"builder-{kind}",
        )
        response = agent.invoke(
            {"messages": [{"role": "user", "content": render_build_request(feature, kind, context)}]},
            config={"configurable": {"thread_id": f"build-{kind}-{uuid.uuid4().hex[:8]}"}},
        )
        payload = extract_json_payload(extract_agent_text(response))
        try:
            artifacts = GeneratedArtifacts.model_validate(payload)
        except ValidationError as exc:
            raise RuntimeError(f"Agent returned an invalid artifact payload: {exc}") from exc
        logger.info("Agent produced %d file(s) for %s/%s", len(artifacts.paths), feature.name, kind)
        return artifacts
