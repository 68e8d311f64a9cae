"""Best-effort chat webhook notifications."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

import requests

from drift_controller.config.models import ChatConfig, ChatFormat
from drift_controller.utils.logging import get_logger

logger = get_logger(__name__)


class ChatEvent(Enum):
    """Events announced in chat."""
    DRIFT_DETECTED = "drift_detected"
    REMEDIATION_SUCCEEDED = "remediation_succeeded"
    REMEDIATION_FAILED = "remediation_failed"
    PLAN_FAILED = "plan_failed"
    CLEAN = "clean"


EVENT_TITLES = {
    ChatEvent.DRIFT_DETECTED: "Drift detected",
    ChatEvent.REMEDIATION_SUCCEEDED: "Drift remediated",
    ChatEvent.REMEDIATION_FAILED: "Remediation failed - manual intervention required",
    ChatEvent.PLAN_FAILED: "Drift check failed",
    ChatEvent.CLEAN: "No drift",
}

EVENT_COLORS = {
    ChatEvent.DRIFT_DETECTED: "#FF9800",
    ChatEvent.REMEDIATION_SUCCEEDED: "#4CAF50",
    ChatEvent.REMEDIATION_FAILED: "#F44336",
    ChatEvent.PLAN_FAILED: "#F44336",
    ChatEvent.CLEAN: "#9E9E9E",
}

EVENT_EMOJI = {
    ChatEvent.DRIFT_DETECTED: ":warning:",
    ChatEvent.REMEDIATION_SUCCEEDED: ":white_check_mark:",
    ChatEvent.REMEDIATION_FAILED: ":x:",
    ChatEvent.PLAN_FAILED: ":x:",
    ChatEvent.CLEAN: ":large_green_circle:",
}


class ChatNotifier:
    """Posts drift events to a Slack or Teams incoming webhook.

    Sending is fire-and-forget: failures are logged and swallowed, never
    retried, so a broken webhook cannot fail a reconciliation cycle.
    """

    def __init__(self, config: ChatConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def send(self, event: ChatEvent, environment: str, data: Dict[str, str]) -> bool:
        """Send one message.

        Returns:
            True if the webhook accepted the message
        """
        if not self.config.enabled or not self.config.webhook_url:
            return False
        if event == ChatEvent.CLEAN and not self.config.notify_on_clean:
            return False

        if self.config.format == ChatFormat.TEAMS:
            payload = build_teams_payload(event, environment, data)
        else:
            payload = build_slack_payload(event, environment, data)

        try:
            response = self.session.post(
                self.config.webhook_url, json=payload, timeout=self.config.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to send {event.value} chat message for {environment}: {e}")
            return False

        logger.debug(f"Sent {event.value} chat message for {environment}")
        return True


def build_slack_payload(event: ChatEvent, environment: str, data: Dict[str, str]) -> Dict:
    """Slack attachment payload."""
    return {
        'text': f"{EVENT_EMOJI[event]} {EVENT_TITLES[event]} in *{environment}*",
        'attachments': [{
            'color': EVENT_COLORS[event],
            'fields': [
                {'title': key.replace('_', ' ').title(), 'value': str(value), 'short': len(str(value)) < 40}
                for key, value in data.items()
            ],
            'footer': 'Drift Controller',
            'ts': int(datetime.now(timezone.utc).timestamp())
        }]
    }


def build_teams_payload(event: ChatEvent, environment: str, data: Dict[str, str]) -> Dict:
    """Microsoft Teams MessageCard payload."""
    return {
        '@type': 'MessageCard',
        '@context': 'https://schema.org/extensions',
        'themeColor': EVENT_COLORS[event].lstrip('#'),
        'summary': f"{EVENT_TITLES[event]} in {environment}",
        'sections': [{
            'activityTitle': f"{EVENT_TITLES[event]} in {environment}",
            'facts': [
                {'name': key.replace('_', ' ').title(), 'value': str(value)}
                for key, value in data.items()
            ],
        }]
    }
