"""
Instruction text for the Realtime session.

Instructions come from OPENAI_REALTIME_INSTRUCTIONS, else from the file named
by OPENAI_REALTIME_INSTRUCTIONS_FILE, else the built-in support prompt. Knowledge
base articles replace the {KNOWLEDGE_BASE} placeholder in whichever is used.
"""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from src.supportline.config import Config

logger = structlog.get_logger(__name__)

MAX_PROMPT_CHARS = 40_000

PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> Path:
    candidate = Path(path)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


def _read_prompt_file(path: str, *, max_chars: int) -> str:
    """File contents, stripped and capped at `max_chars`; "" when unreadable."""
    if not path:
        return ""
    file_path = _resolve_path(path)

    text = ""
    for encoding in ("utf-8", "utf-8-sig"):
        try:
            text = file_path.read_text(encoding=encoding)
            break
        except FileNotFoundError:
            logger.warning("Instructions file missing", path=str(file_path))
            return ""
        except UnicodeDecodeError:
            continue
        except OSError as e:
            logger.error("Instructions file unreadable", path=str(file_path), error=str(e))
            return ""
    else:
        logger.warning("Instructions file is not valid UTF-8", path=str(file_path))

    text = text.strip()
    if len(text) > max_chars:
        logger.warning("Instructions file cut short", path=str(file_path), limit=max_chars)
        text = text[:max_chars]
    return text


def _fill_placeholders(prompt: str, config: Config) -> str:
    values = {"AGENT_NAME": config.agent_name, "COMPANY_NAME": config.company_name}
    for name, value in values.items():
        prompt = prompt.replace("{%s}" % name, value).replace("{%s}" % name.lower(), value)
    return prompt


def resolve_prompt(
    *,
    config: Config,
    inline_text: str,
    file_path: str,
    max_chars: int = MAX_PROMPT_CHARS,
) -> str:
    """Inline text wins over the file; {AGENT_NAME} and {COMPANY_NAME} are filled in."""
    prompt = (inline_text or "").strip() or _read_prompt_file(file_path, max_chars=max_chars)
    return _fill_placeholders(prompt, config)


@lru_cache(maxsize=4)
def load_knowledge_base(path: str) -> Dict[str, Any]:
    """Load the knowledge base JSON. A missing or broken file yields no articles."""
    file_path = _resolve_path(path)
    try:
        data = json.loads(file_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.warning("Knowledge base not found", path=str(file_path))
        return {"articles": []}
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.error("Knowledge base unreadable", path=str(file_path), error=str(e))
        return {"articles": []}

    if not isinstance(data, dict) or not isinstance(data.get("articles"), list):
        logger.error("Knowledge base has no articles list", path=str(file_path))
        return {"articles": []}

    logger.info("Knowledge base loaded", path=str(file_path), articles=len(data["articles"]))
    return data


def _join(value: Any) -> str:
    if isinstance(value, list):
        return "; ".join(str(v) for v in value)
    return str(value)


def build_knowledge_base_context(knowledge_base: Dict[str, Any]) -> str:
    blocks: List[str] = []
    for article in knowledge_base.get("articles", []):
        if not isinstance(article, dict):
            continue
        content = article.get("content") or {}
        parts = [
            f"TITLE: {article.get('title', '')}",
            f"OVERVIEW: {content.get('overview', '')}",
        ]
        if content.get("solution"):
            parts.append(f"SOLUTION: {_join(content['solution'])}")
        if content.get("important_notes"):
            parts.append(f"NOTES: {_join(content['important_notes'])}")
        faq = article.get("faq") or []
        if faq:
            parts.append(f"FAQ: Q: {faq[0].get('question', '')} A: {faq[0].get('answer', '')}")
        blocks.append("\n".join(parts))
    return "\n\n".join(blocks)


SYSTEM_INSTRUCTIONS_TEMPLATE = """You are a {COMPANY_NAME} AI support assistant. You have access to the following knowledge base about {COMPANY_NAME}'s products and services:

{KNOWLEDGE_BASE}

IMPORTANT GUIDELINES:
1. Your FIRST priority is to collect the user's email address. Before answering any question, say:
   "Hello! To better assist you today, could you please share your email address with me?"

2. Once you receive an email, confirm it by saying:
   "Thank you, I've noted your email as [email]. Now, how can I help you with {COMPANY_NAME}?"
3. ONLY after getting the email, proceed with these guidelines:
   - ONLY answer questions related to {COMPANY_NAME}'s products and services
   - If a user asks about anything not related to {COMPANY_NAME}, respond with:
     "I'm specifically trained to help with {COMPANY_NAME}'s products and services. What would you like to know about {COMPANY_NAME}?"
   - Keep responses concise and friendly
   - Use the knowledge base information to provide accurate answers
   - If you don't find a specific answer in the knowledge base, say:
     "I don't have specific information about that aspect of {COMPANY_NAME}. I'll have a support specialist follow up with you at [email]."
   - If the user asks to speak with a human agent at any point, acknowledge their request and say:
     "I understand you'd like to speak with a human agent. I'll connect you with a support specialist right away."

Remember: Always get the email first, then help with {COMPANY_NAME}-related questions only. Users can request a human agent at any time by saying "speak to a human" or "talk to an agent"."""


def build_system_instructions(config: Config, knowledge_base: Optional[Dict[str, Any]] = None) -> str:
    """
    Session instructions for the Realtime backend.

    An inline or file prompt overrides the built-in template; `{KNOWLEDGE_BASE}`
    is filled in either case.
    """
    if knowledge_base is None:
        knowledge_base = load_knowledge_base(config.knowledge_base_path)
    context = build_knowledge_base_context(knowledge_base)

    custom = resolve_prompt(
        config=config,
        inline_text=config.openai_realtime_instructions,
        file_path=config.openai_realtime_instructions_file,
    )
    prompt = custom or _fill_placeholders(SYSTEM_INSTRUCTIONS_TEMPLATE, config)
    return prompt.replace("{KNOWLEDGE_BASE}", context)
