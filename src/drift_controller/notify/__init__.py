"""Notification collaborators: issue tracker and chat webhook."""

from drift_controller.notify.chat import ChatEvent, ChatNotifier, build_slack_payload, build_teams_payload
from drift_controller.notify.issues import (
    AUTO_FIX_LABEL,
    DRIFT_LABEL,
    GitHubIssueTracker,
    IssueTicket,
    IssueTracker,
    drift_labels,
)

__all__ = [
    'ChatEvent',
    'ChatNotifier',
    'build_slack_payload',
    'build_teams_payload',
    'AUTO_FIX_LABEL',
    'DRIFT_LABEL',
    'GitHubIssueTracker',
    'IssueTicket',
    'IssueTracker',
    'drift_labels',
]
