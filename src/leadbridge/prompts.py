"""
Scripts for the conversational agent and the spoken TwiML notices.

The agent prompt resolves from (1) AGENT_PROMPT inline text, else (2)
AGENT_PROMPT_FILE, else (3) the built-in care coordinator prompt. Placeholders
`{AGENT_NAME}`, `{COMPANY_NAME}` and `{CALLBACK_NUMBER}` are filled from config.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from src.leadbridge.config import Config
from src.leadbridge.records import LeadInfo

logger = structlog.get_logger(__name__)

_DEFAULT_MAX_PROMPT_CHARS = 40_000
_DEFAULT_CALLBACK_NUMBER = "(555) 123-4567"

BASE_PROMPT = """You are {AGENT_NAME}, a friendly and warm care coordinator for {COMPANY_NAME}, a home healthcare company. You're calling to follow up on care service inquiries with a calm and reassuring voice, using natural pauses to make the conversation feel more human-like. Your main goals are:
1. Verify the details submitted in the care request from the Point of Contact for the 'Care Needed For'.
2. Show empathy for the care situation.
3. Confirm interest in receiving care services for the 'Care Needed For'.
4. Set expectations for next steps, which are to discuss with a care specialist.

Use casual, friendly language, avoiding jargon and technical terms, to make the lead feel comfortable and understood. Listen carefully and address concerns with empathy, focusing on building rapport. If asked about pricing, explain that a care specialist will discuss detailed pricing options soon. If the person is not interested, thank them for their time and end the call politely.

If our care team is not available to join the call, kindly explain to the person that our care specialists are currently unavailable but will contact them soon. Verify their contact information (phone number and/or email) to make sure it matches what we have on file, and ask if there's a preferred time for follow-up. Be sure to confirm all their information is correct before ending the call.

IMPORTANT: When the call connects, wait for the person to say hello or acknowledge the call before you start speaking. If they don't say anything within 2-3 seconds, then begin with a warm greeting. Always start with a natural greeting like 'Hello' and pause briefly before continuing with your introduction."""

VOICEMAIL_TEMPLATE = """IMPORTANT: This call has reached a voicemail. Wait for the beep, then leave a personalized message like: "Hello {lead_name}{lead_name_comma} I'm calling from {COMPANY_NAME} regarding the care services inquiry {for_care_needed_for} {who_care_reason}. Please call us back at {CALLBACK_NUMBER} at your earliest convenience to discuss how we can help. Thank you."

Ensure the message sounds natural and conversational, not like a template. Be concise as voicemails often have time limits."""

GENERIC_VOICEMAIL = """IMPORTANT: This call has reached a voicemail. Wait for the beep, then leave a message: "Hello, I'm calling from {COMPANY_NAME} regarding the care services inquiry. Please call us back at {CALLBACK_NUMBER} at your earliest convenience to discuss how we can help. Thank you."

Keep the message concise but warm and professional. Focus on urgency without being pushy."""

AGENT_UNAVAILABLE_INSTRUCTIONS = (
    "Our care specialists are not available to join this call right now. Let the person know "
    "a care specialist will contact them soon. Ask for a preferred time window for the callback, "
    "then confirm their phone number and email so they match what we have on file."
)

RECONNECT_INSTRUCTIONS = (
    "We tried to connect this person with a care specialist but the specialist could not join. "
    "Apologize briefly, explain that you will help them yourself, and continue the conversation. "
    "Do not try to transfer the call again. Collect a preferred callback time and confirm their "
    "contact details."
)

FIRST_MESSAGE_TEMPLATE = (
    "Hello, this is {AGENT_NAME} from {COMPANY_NAME}. I'm calling about the care services "
    "inquiry for {care_needed_for}. Is this {lead_name}?"
)
GENERIC_FIRST_MESSAGE = (
    "Hello, this is {AGENT_NAME} from {COMPANY_NAME}. I'm calling about the care services "
    "inquiry. Am I speaking with the right person?"
)
RECONNECT_FIRST_MESSAGE = (
    "I'm sorry about that, it looks like our specialist couldn't join just now. "
    "I'm still here to help you."
)

SALES_ANNOUNCEMENT_TEMPLATE = (
    "You're being connected to an AI-assisted call with {lead_name}. The AI will speak with the "
    "lead about {care_reason} {care_needed_for}. Please wait while we connect you. If the call "
    "goes to voicemail, you will be notified."
)

AGENT_HOLD_MESSAGE = "Please wait while we connect you with a lead."
AGENT_VOICEMAIL_NOTICE = "The AI is now leaving a voicemail. We'll follow up with this lead later. Goodbye."
CONTACT_MISSING_NOTICE = (
    "We apologize, but the customer appears to have disconnected. "
    "The AI will follow up with them later."
)
AGENT_MISSING_APOLOGY = (
    "We apologize, but we're having trouble connecting you with our team. Let me help you instead."
)
ABANDONED_LEG_NOTICE = "Thank you for your time. A member of our team will follow up with you soon. Goodbye."
AGENT_LEAD_LEFT_NOTICE = "The lead has disconnected. We'll follow up with them later. Goodbye."


def _repo_root() -> Path:
    # src/leadbridge/prompts.py -> repo root is ../../
    return Path(__file__).resolve().parents[2]


def _read_text_file(path: str, *, max_chars: int) -> str:
    if not path:
        return ""

    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = _repo_root() / file_path

    try:
        content = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("Prompt file not found", path=str(file_path))
        return ""
    except UnicodeDecodeError:
        try:
            content = file_path.read_text(encoding="utf-8-sig")
        except Exception:
            logger.warning("Prompt file decode failed", path=str(file_path))
            return ""
    except OSError:
        logger.exception("Prompt file read failed", path=str(file_path))
        return ""

    content = content.strip()
    if len(content) > max_chars:
        logger.warning("Prompt truncated (too long)", path=str(file_path), max_chars=max_chars)
        content = content[:max_chars]
    return content


def apply_placeholders(text: str, config: Config) -> str:
    if not text:
        return ""

    replacements = {
        "{AGENT_NAME}": config.agent_name,
        "{COMPANY_NAME}": config.company_name,
        "{CALLBACK_NUMBER}": config.callback_number or _DEFAULT_CALLBACK_NUMBER,
    }
    for key, value in replacements.items():
        text = text.replace(key, value)
    return text


def resolve_base_prompt(config: Config, *, max_chars: int = _DEFAULT_MAX_PROMPT_CHARS) -> str:
    prompt = (config.agent_prompt or "").strip()
    if not prompt:
        prompt = _read_text_file(config.agent_prompt_file, max_chars=max_chars)
    if not prompt:
        prompt = BASE_PROMPT
    return apply_placeholders(prompt, config)


def lead_context(lead: LeadInfo) -> str:
    if lead.is_empty:
        return ""
    parts = ["For this specific call:"]
    if lead.lead_name:
        parts.append(f"The Point of Contact is {lead.lead_name}.")
    if lead.care_needed_for:
        parts.append(f"Care is needed for {lead.care_needed_for}.")
    if lead.care_reason:
        parts.append(f"The reason for care is: {lead.care_reason}.")
    return " ".join(parts)


def voicemail_script(lead: LeadInfo, config: Config) -> str:
    """Personalized voicemail instructions, or the generic ones without lead details."""
    if lead.is_empty:
        return apply_placeholders(GENERIC_VOICEMAIL, config)

    script = VOICEMAIL_TEMPLATE.format(
        lead_name=lead.lead_name,
        lead_name_comma=", " if lead.lead_name else "",
        for_care_needed_for=f"for {lead.care_needed_for}" if lead.care_needed_for else "",
        who_care_reason=f"who needs {lead.care_reason}" if lead.care_reason else "",
        AGENT_NAME="{AGENT_NAME}",
        COMPANY_NAME="{COMPANY_NAME}",
        CALLBACK_NUMBER="{CALLBACK_NUMBER}",
    )
    # Collapse gaps left by missing fields.
    script = re.sub(r"[ ]{2,}", " ", script).replace(" .", ".")
    return apply_placeholders(script, config)


def agent_unavailable_script(lead: LeadInfo) -> str:
    if lead.lead_name:
        return f"{AGENT_UNAVAILABLE_INSTRUCTIONS} You are speaking with {lead.lead_name}."
    return AGENT_UNAVAILABLE_INSTRUCTIONS


def first_message(lead: LeadInfo, config: Config) -> str:
    if lead.lead_name or lead.care_needed_for:
        message = FIRST_MESSAGE_TEMPLATE.format(
            AGENT_NAME="{AGENT_NAME}",
            COMPANY_NAME="{COMPANY_NAME}",
            care_needed_for=lead.care_needed_for or "your loved one",
            lead_name=lead.lead_name or "there",
        )
    else:
        message = GENERIC_FIRST_MESSAGE
    return apply_placeholders(message, config)


def sales_announcement(lead: LeadInfo) -> str:
    """Spoken to the sales agent right before they join the room."""
    text = SALES_ANNOUNCEMENT_TEMPLATE.format(
        lead_name=lead.lead_name or "a potential client",
        care_reason=lead.care_reason or "home care services",
        care_needed_for=f"for {lead.care_needed_for}" if lead.care_needed_for else "",
    )
    return re.sub(r"\s+\.", ".", re.sub(r"[ ]{2,}", " ", text))


def build_system_prompt(
    lead: LeadInfo,
    config: Config,
    *,
    is_voicemail: bool = False,
    is_reconnect: bool = False,
    additional_instructions: str = "",
) -> str:
    sections = [resolve_base_prompt(config)]
    context = lead_context(lead)
    if context:
        sections.append(context)
    if is_voicemail:
        sections.append(voicemail_script(lead, config))
    if is_reconnect:
        sections.append(RECONNECT_INSTRUCTIONS)
    if additional_instructions:
        sections.append(additional_instructions)
    return "\n\n".join(sections)


def build_initiation_message(
    lead: LeadInfo,
    config: Config,
    *,
    is_voicemail: bool = False,
    is_reconnect: bool = False,
    first_message_override: Optional[str] = None,
) -> Dict[str, Any]:
    """`conversation_initiation_client_data` frame for the agent service."""
    if first_message_override:
        opening = first_message_override
    elif is_reconnect:
        opening = RECONNECT_FIRST_MESSAGE
    else:
        opening = first_message(lead, config)

    return {
        "type": "conversation_initiation_client_data",
        "conversation_config_override": {
            "agent": {
                "prompt": {
                    "prompt": build_system_prompt(
                        lead, config, is_voicemail=is_voicemail, is_reconnect=is_reconnect
                    ),
                },
                "first_message": opening,
            },
            "conversation": {
                "initial_audio_silence_timeout_ms": config.agent_silence_timeout_ms,
            },
        },
        "dynamic_variables": {
            "lead_name": lead.lead_name,
            "care_reason": lead.care_reason,
            "care_needed_for": lead.care_needed_for,
        },
    }
