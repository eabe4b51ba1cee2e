"""
Slack Interaction Handler
=========================

Applies approve / reject / edit button presses from the approval channel.

Button action ids have the form "<action>_<outreach_id>" (the outreach id
may itself contain underscores). Approve and reject transition the
ApprovalRecord; edit leaves it untouched and tells the caller where the
editing surface lives. A press on an already-decided item is refused and
reported back to the user in the message.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Tuple

from core.approval_engine import ApprovalEngine, get_approval_engine
from core.errors import ApprovalError
from core.event_log import Event

logger = logging.getLogger("slack_handler")

EDIT_REDIRECT_TEMPLATE = "/approval-queue?edit={outreach_id}"

DECISIONS = {
    "approve": ("Approved", ":white_check_mark:"),
    "reject": ("Rejected", ":x:"),
}


def parse_action_id(action_id: str) -> Optional[Tuple[str, str]]:
    """Split "approve_abc_1" into ("approve", "abc_1")."""
    parts = (action_id or "").split("_", 1)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    return parts[0], parts[1]


def friendly_error(error_msg: str) -> str:
    lowered = error_msg.lower()
    if "not found" in lowered:
        return "This message no longer exists. It may have been removed or already sent."
    if "already" in lowered:
        return "This message has already been processed by another approver."
    return error_msg


def without_buttons(blocks: list, note: str) -> list:
    """Drop the actions row and append a context line carrying `note`."""
    kept = [b for b in blocks if b.get("type") != "actions"]
    kept.append({"type": "context", "elements": [{"type": "mrkdwn", "text": note}]})
    return kept


def _slack_timestamp() -> str:
    now = int(time.time())
    return f"<!date^{now}^{{date_short_pretty}} at {{time}}|{time.strftime('%Y-%m-%d %H:%M:%S')}>"


class SlackInteractionHandler:

    def __init__(self, engine: Optional[ApprovalEngine] = None):
        self.engine = engine or get_approval_engine()

    async def handle(self, event: Event) -> Dict[str, Any]:
        payload = event.payload
        user = payload.get("user") or {}
        approver_info = f"{user.get('username') or user.get('name') or 'unknown_slack_user'} ({user.get('id', 'unknown_id')})"
        original_blocks = payload.get("message_blocks") or []

        parsed = parse_action_id(payload.get("action_id", ""))
        if parsed is None:
            logger.warning("Invalid action_id format '%s' from %s", payload.get("action_id"), approver_info)
            return self._error_response(original_blocks, "Invalid action format. Please contact support.")

        action_type, outreach_id = parsed
        logger.info("Slack interaction | action=%s | outreach_id=%s | user=%s", action_type, outreach_id, approver_info)

        if action_type == "edit":
            return {
                "success": True,
                "action": "edit",
                "outreach_id": outreach_id,
                "redirect_url": EDIT_REDIRECT_TEMPLATE.format(outreach_id=outreach_id),
            }

        if action_type not in DECISIONS:
            logger.warning("Unknown action type '%s' from %s", action_type, approver_info)
            return self._error_response(original_blocks, f"Unknown action: {action_type}")

        label, emoji = DECISIONS[action_type]
        decide = self.engine.approve if action_type == "approve" else self.engine.reject
        try:
            record = await asyncio.to_thread(decide, outreach_id, approver_info, f"{label} via Slack")
        except ApprovalError as e:
            logger.warning(
                "FAILED | outreach_id=%s | approver=%s | action=%s | error=%s",
                outreach_id, approver_info, action_type, e,
            )
            return self._error_response(original_blocks, friendly_error(str(e)))

        return {
            "success": True,
            "action": record.status,
            "outreach_id": outreach_id,
            "replace_original": True,
            "blocks": without_buttons(original_blocks, f"{emoji} *{label}* by {approver_info}\n{_slack_timestamp()}"),
            "text": f"Action processed: {action_type}",
        }

    def _error_response(self, original_blocks: list, error_msg: str) -> Dict[str, Any]:
        return {
            "success": False,
            "error": error_msg,
            "replace_original": True,
            "blocks": without_buttons(original_blocks, f":warning: *Error:* {error_msg}"),
            "text": f"Error: {error_msg}",
        }


_handler_instance: Optional[SlackInteractionHandler] = None


def get_slack_handler() -> SlackInteractionHandler:
    global _handler_instance
    if _handler_instance is None:
        _handler_instance = SlackInteractionHandler()
    return _handler_instance
