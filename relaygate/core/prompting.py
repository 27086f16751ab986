"""Prompt assembly for the single system/user pair every provider client accepts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from relaygate.config.settings import settings
from relaygate.core.errors import MalformedClientRequestError
from relaygate.core.models import ChatMessage


NO_MESSAGES_MESSAGE = "messages is required and must be a non-empty array"
NO_USER_MESSAGE = "At least one user message is required"


def split_messages(messages: Sequence[ChatMessage]) -> tuple[str, str]:
    """Collapse an OpenAI message list into (system_prompt, user_prompt)."""

    if not messages:
        raise MalformedClientRequestError(NO_MESSAGES_MESSAGE, param="messages")
    if not any(message.role == "user" for message in messages):
        raise MalformedClientRequestError(NO_USER_MESSAGE, param="messages")

    system_prompt = "\n".join(message.content for message in messages if message.role == "system")
    if not system_prompt:
        system_prompt = settings.default_system_prompt

    transcript = []
    for message in messages:
        if message.role == "user":
            transcript.append(f"User: {message.content}\n")
        elif message.role == "assistant":
            transcript.append(f"Assistant: {message.content}\n")
    return system_prompt, "".join(transcript)


@dataclass(frozen=True, slots=True)
class EditorContext:
    """Editor metadata the extension sends as X-* headers."""

    session_id: str | None = None
    editor_version: str | None = None
    workspace_root: str | None = None
    active_language: str | None = None
    file_path: str | None = None


def editor_context_from_headers(headers: Mapping[str, str]) -> EditorContext | None:
    user_agent = (headers.get("user-agent") or "").lower()
    editor_version = headers.get("x-vs-code-version")
    if "vscode" not in user_agent and not editor_version:
        return None
    return EditorContext(
        session_id=headers.get("x-session-id"),
        editor_version=editor_version,
        workspace_root=headers.get("x-workspace-root"),
        active_language=headers.get("x-active-language"),
        file_path=headers.get("x-file-path"),
    )


_EDITOR_PREAMBLE = """You are {app_name}, an AI code assistant integrated with the developer's editor. You help developers write, understand, and improve code.

When suggesting code changes:
1. Provide clear explanations
2. Use proper code formatting with language tags
3. For a full file rewrite, use a fenced block tagged with file="<path>"
4. Be concise but thorough
"""


def build_editor_system_prompt(
    context: Mapping[str, Any] | None,
    editor: EditorContext | None = None,
    *,
    transport: str = "http",
) -> str:
    prompt = _EDITOR_PREAMBLE.format(app_name=settings.app_name)
    if transport == "websocket":
        prompt += "\nConnection: WebSocket (real-time)\n"

    if editor is not None:
        prompt += "\nEditor Integration Context:\n"
        prompt += f"- Session ID: {editor.session_id or 'unknown'}\n"
        prompt += f"- Editor Version: {editor.editor_version or 'unknown'}\n"
        prompt += f"- Workspace: {editor.workspace_root or 'No workspace'}\n"
        if editor.active_language:
            prompt += f"- Current Language: {editor.active_language}\n"
        if editor.file_path:
            prompt += f"- Active File: {editor.file_path}\n"

    context = context or {}
    active_file = context.get("activeFile")
    if isinstance(active_file, Mapping):
        language = active_file.get("language") or ""
        prompt += f"\nCurrent file: {active_file.get('path', '')} ({language})\n"
        selection = active_file.get("selection")
        if isinstance(selection, Mapping) and selection.get("text"):
            prompt += f"\nSelected code:\n```{language}\n{selection['text']}\n```\n"

    if context.get("workspaceRoot"):
        prompt += f"\nWorkspace: {context['workspaceRoot']}\n"

    diagnostics = context.get("diagnostics")
    if isinstance(diagnostics, list) and diagnostics:
        prompt += "\nCurrent issues:\n"
        for item in diagnostics:
            if not isinstance(item, Mapping):
                continue
            prompt += f"- {item.get('file')}:{item.get('line')} [{item.get('severity')}] {item.get('message')}\n"

    return prompt
