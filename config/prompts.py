"""
AI prompts and templates for Mention Bot.

This module centralizes all AI-related prompts and templates.
Modify these to adjust the tone, style, and behavior of generated replies.

Structure:
    PROMPT_MODULES: Building blocks of the system prompt, combined by priority
    DEFAULT_SYSTEM_PROMPT: Used when every module is disabled
    REPLY_TEMPLATE: Wraps the mention text with its metadata
"""

from dataclasses import dataclass, replace
from typing import Iterable, Optional


@dataclass(frozen=True)
class PromptModule:
    id: str
    name: str
    prompt: str
    enabled: bool = True
    priority: int = 5  # 1 (first) .. 10 (last)


# =============================================================================
# System Prompt Modules
# =============================================================================
# Enabled modules are joined in ascending priority order to build the
# system prompt. Toggle or reorder them to change the bot's personality.

PROMPT_MODULES = (
    PromptModule(
        id="greeting",
        name="Greeting",
        prompt="You are a friendly Twitter bot. Respond warmly to greetings and be helpful. Always be polite and engaging.",
        priority=1,
    ),
    PromptModule(
        id="help",
        name="Help",
        prompt="You can help users understand what you do and how to interact with you. Be informative and helpful.",
        priority=2,
    ),
    PromptModule(
        id="conversation",
        name="Conversation",
        prompt="Engage in natural conversation. Be helpful, informative, and friendly. Ask follow-up questions when appropriate.",
        priority=3,
    ),
    PromptModule(
        id="humor",
        name="Humor",
        prompt="You have a good sense of humor. Use appropriate jokes and witty responses when the context allows.",
        enabled=False,
        priority=4,
    ),
    PromptModule(
        id="brevity",
        name="Brevity",
        prompt=(
            "CRITICAL: Your replies MUST fit in a single post of at most 280 characters. "
            "Reply with ONLY the post text - no quotes, no explanations, no character count."
        ),
        priority=9,
    ),
    PromptModule(
        id="safety",
        name="Safety",
        prompt="Always respond in a safe, appropriate manner. Avoid harmful, offensive, or inappropriate content.",
        priority=10,
    ),
)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant replying to social media mentions. Keep replies short."


def combined_system_prompt(
    modules: Iterable[PromptModule] = PROMPT_MODULES,
    overrides: Optional[dict[str, bool]] = None,
) -> str:
    """
    Join the enabled modules' prompts by priority.

    Args:
        modules: Prompt modules to consider.
        overrides: Optional {module_id: enabled} switches.

    Returns:
        The system prompt, or DEFAULT_SYSTEM_PROMPT when nothing is enabled.
    """
    overrides = overrides or {}
    active = [
        module for module in (
            replace(m, enabled=overrides[m.id]) if m.id in overrides else m
            for m in modules
        )
        if module.enabled
    ]
    if not active:
        return DEFAULT_SYSTEM_PROMPT
    return "\n\n".join(module.prompt for module in sorted(active, key=lambda m: m.priority))


SYSTEM_PROMPT = combined_system_prompt()

# =============================================================================
# Reply Template
# =============================================================================
# Wraps the mention text sent as the user message.
# Variables: {mention_id}, {author}, {content}, {hashtags}

REPLY_TEMPLATE = """Reply to this mention:

Post ID: {mention_id}
User: @{author}
Original post: {content}
Hashtags: {hashtags}

Reply with ONLY the post text.
"""
