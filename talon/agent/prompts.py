"""Prompt text used by the runner and the memory compressor."""

from __future__ import annotations

from collections.abc import Sequence

COMPRESSION_SYSTEM_PROMPT = (
    "You are a memory compression agent. Return ONLY the updated summary."
)

SUMMARY_HEADER = "## Memory Summary (compressed history)"


def build_system_prompt(
    agent_name: str,
    persona: str = "",
    tools: Sequence[str] = (),
) -> str:
    """Base system prompt: persona, then the tool catalogue."""
    parts = []
    if persona:
        parts.append(persona.strip())
    else:
        parts.append(
            f"You are {agent_name}, a helpful personal assistant. "
            "Answer directly and use tools when they help."
        )
    if tools:
        listing = "\n".join(f"- {line}" for line in tools)
        parts.append(f"## Available Tools\n\n{listing}")
    return "\n\n".join(parts)


def build_compression_prompt(old_summary: str, new_messages: str, max_tokens: int = 800) -> str:
    return f"""You are a memory compression agent. Your job is to update the memory summary.

## Current Memory Summary
{old_summary or '(empty - this is the first compression)'}

## New Messages to Incorporate
{new_messages}

## Instructions
Create an updated memory summary that:
1. Preserves all important facts, decisions, and user preferences
2. Merges new information with the existing summary
3. Removes outdated or superseded information
4. Stays under {max_tokens} tokens
5. Uses this format:

User Profile:
- Key facts about the user

Current Task:
- What the user is currently working on

Decisions Made:
- Important choices and their rationale

Important Facts:
- Technical details, preferences, constraints

Recent Actions:
- What was just done (last 2-3 actions only)

Return ONLY the updated summary - no explanations."""
