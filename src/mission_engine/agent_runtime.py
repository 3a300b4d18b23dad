"""LLM-backed executor: runs a work unit through a deep agent on the workspace."""

from __future__ import annotations

import json
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Any

from deepagents import create_deep_agent
from deepagents.backends import FilesystemBackend
from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import ValidationError

from .canonical import to_canonical_json
from .models import WorkUnitPayload, WorkUnitReport

logger = logging.getLogger(__name__)

# Per-request ceiling and client retries for the executor model.
MODEL_TIMEOUT_SECONDS = 120
MODEL_MAX_RETRIES = 3

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)

EXECUTOR_SYSTEM_PROMPT = """You are a software engineer executing one bounded work unit.

Work only on the files listed in the unit's file scope and stay within its line and
function bounds. Treat the contract snapshot as fixed for the duration of the unit:
if a contract is missing something or looks wrong, do not change it, report a
discovery instead.

When you are done, reply with a single JSON object:
{
  "modified_files": ["<path>", ...],
  "validation_passed": true | false,
  "validation_output": "<what you checked and the result>",
  "outcome": "terminal" | "partial",
  "discoveries": [
    {"category": "contract_gap | architectural_decision | dependency_missing | ambiguous_requirement | observation",
     "payload": {"contract_id": "<optional>", "description": "<what you found>"}}
  ]
}
Use "partial" when the unit needs another pass to finish.
"""


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return the OpenAI key, reading ``<repo_root>/.env`` when the environment lacks it."""
    dotenv_file = (repo_root or Path.cwd()) / ".env"
    if dotenv_file.is_file():
        load_dotenv(dotenv_file)
    key = os.environ.get("OPENAI_API_KEY", "").strip()
    if key:
        return key
    raise RuntimeError(f"Agent executors need OPENAI_API_KEY in the environment or in {dotenv_file}")


def get_chat_model(*, model_name: str, temperature: float = 0.0, repo_root: Path | None = None) -> ChatOpenAI:
    model = model_name.strip()
    if not model:
        raise ValueError("Executor model name is empty")
    ensure_openai_api_key(repo_root)
    return ChatOpenAI(
        model=model,
        temperature=temperature,
        timeout=MODEL_TIMEOUT_SECONDS,
        max_retries=MODEL_MAX_RETRIES,
    )


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        return _message_text(content.get("text") or content.get("content") or "")
    if isinstance(content, list):
        parts = (_message_text(block) for block in content)
        return "\n".join(part for part in parts if part.strip())
    return "" if content is None else str(content)


def extract_agent_text(response: Any) -> str:
    """Text of the agent's final message."""
    if isinstance(response, dict) and response.get("messages"):
        response = response["messages"][-1]
    if isinstance(response, dict):
        return _message_text(response.get("content"))
    if isinstance(response, str):
        return response
    return _message_text(getattr(response, "content", response))


def extract_json_payload(text: str) -> dict[str, Any]:
    """Find the unit report in agent output.

    The whole reply is tried first, then a fenced ``json`` block, then the
    widest ``{...}`` span.

    Raises:
        RuntimeError: If none of them decodes to a JSON object.
    """
    reply = text.strip()
    if not reply:
        raise RuntimeError("Executor agent sent an empty reply instead of a unit report")

    attempts = [reply]
    fenced = _FENCED_JSON_RE.search(reply)
    if fenced:
        attempts.append(fenced.group(1))
    if "{" in reply and "}" in reply:
        attempts.append(reply[reply.index("{") : reply.rindex("}") + 1])

    for attempt in attempts:
        try:
            decoded = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(decoded, dict):
            return decoded
    raise RuntimeError(f"No unit report found in executor agent reply: {reply[:200]!r}")


def render_unit_message(payload: WorkUnitPayload) -> str:
    lines = [
        f"Mission: {payload.mission_id}",
        f"Phase: {payload.phase.value}",
        f"Unit: {payload.unit_id} (attempt {payload.attempt})",
        f"File scope: {', '.join(payload.file_scope) or '(none)'}",
        f"Functions: {', '.join(payload.functions) or '(none)'}",
        f"Estimated lines: {payload.estimated_lines}",
        (
            f"Bounds: at most {payload.bounds.max_files} files, {payload.bounds.max_lines} lines, "
            f"{payload.bounds.max_functions} functions"
        ),
        f"Contract snapshot ({payload.contract_snapshot.fingerprint[:12]}):",
        to_canonical_json(payload.contract_snapshot.contracts),
    ]
    return "\n".join(lines)


class AgentExecutor:
    """Executor that hands each unit to a ``deepagents`` agent rooted at the workspace.

    Every call builds a fresh agent and always calls the real model; the agent's
    final JSON message becomes the ``WorkUnitReport``.
    """

    def __init__(
        self,
        *,
        executor_id: str,
        capabilities: frozenset[str],
        model_name: str,
        workspace_root: Path,
        slots: int = 1,
        temperature: float = 0.0,
    ) -> None:
        self.executor_id = executor_id
        self.capabilities = frozenset(capabilities)
        self.model_name = model_name
        self.workspace_root = workspace_root
        self.slots = slots
        self.temperature = temperature

    def execute(self, payload: WorkUnitPayload) -> WorkUnitReport:
        """Run the unit and parse the agent's report.

        Raises:
            RuntimeError: If the agent output is missing or does not form a valid report.
        """
        model = get_chat_model(model_name=self.model_name, temperature=self.temperature, repo_root=self.workspace_root)
        backend = FilesystemBackend(root_dir=self.workspace_root, virtual_mode=True)
        agent = create_deep_agent(
            model=model,
            tools=[],
            backend=backend,
            system_prompt=EXECUTOR_SYSTEM_PROMPT,
            name=f"executor-{self.executor_id}",
        )
        logger.info("Agent %s starting unit %s", self.executor_id, payload.unit_id)
        response = agent.invoke(
            {"messages": [{"role": "user", "content": render_unit_message(payload)}]},
            config={"configurable": {"thread_id": f"{payload.unit_id}-{uuid.uuid4().hex[:8]}"}},
        )
        report_payload = extract_json_payload(extract_agent_text(response))
        report_payload["unit_id"] = payload.unit_id
        report_payload["executor_id"] = self.executor_id
        try:
            return WorkUnitReport.model_validate(report_payload)
        except ValidationError as exc:
            raise RuntimeError(f"Agent report for {payload.unit_id} failed validation: {exc}") from exc
