from __future__ import annotations

DEFAULT_SYSTEM_PROMPT = """You are counsel, a research assistant for the impress suite of apps.

You can search and manage the user's bibliography in imbib, read documents in imprint,
list figures in implore and browse research conversations in impart. Use the tools when
they help answer the request, cite papers by their cite keys, and say plainly when a
tool fails or returns nothing useful. Finish with a concise answer for the user."""


def build_system_prompt(base_prompt: str | None = None, conversation_summary: str | None = None) -> str:
    prompt = (base_prompt or "").strip() or DEFAULT_SYSTEM_PROMPT
    summary = (conversation_summary or "").strip()
    if summary:
        prompt = f"{prompt}\n\nSummary of the conversation so far:\n{summary}"
    return prompt
