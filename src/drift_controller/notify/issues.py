"""Drift tickets in GitHub Issues."""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

import requests

from drift_controller.config.models import IssuesConfig
from drift_controller.utils.errors import ErrorContext, NotificationFailure
from drift_controller.utils.logging import get_logger

logger = get_logger(__name__)

DRIFT_LABEL = "drift-detection"
AUTO_FIX_LABEL = "auto-fix"


def drift_labels(environment: str, extra: Optional[List[str]] = None) -> List[str]:
    """Labels carried by every drift ticket of an environment."""
    labels = [DRIFT_LABEL, AUTO_FIX_LABEL, environment]
    for label in extra or []:
        if label not in labels:
            labels.append(label)
    return labels


@dataclass
class IssueTicket:
    """A drift ticket in the issue tracker."""

    number: int
    title: str
    state: str = "open"
    labels: List[str] = field(default_factory=list)
    url: str = ""

    def is_open(self) -> bool:
        return self.state == "open"


class IssueTracker(ABC):
    """Interface the reconciler uses to correlate drift episodes with tickets."""

    @abstractmethod
    def find_open(self, labels: List[str]) -> Optional[IssueTicket]:
        """Find the open ticket carrying all of the given labels."""

    @abstractmethod
    def create(self, labels: List[str], title: str, body: str) -> int:
        """Open a ticket and return its number."""

    @abstractmethod
    def comment(self, number: int, body: str) -> None:
        """Append a comment to a ticket."""

    @abstractmethod
    def close(self, number: int, comment: str) -> None:
        """Comment on and close a ticket."""


class GitHubIssueTracker(IssueTracker):
    """Issue tracker backed by the GitHub REST API."""

    def __init__(self, config: IssuesConfig, session: Optional[requests.Session] = None):
        """Initialize GitHub tracker.

        Args:
            config: Issue tracker configuration
            session: HTTP session (created when omitted)
        """
        token = config.token or os.environ.get("GITHUB_TOKEN")
        if not token:
            logger.warning("No GitHub token configured - issue calls will be unauthenticated")

        self.repository = config.repository
        self.api_url = config.api_url.rstrip("/")
        self.timeout = config.timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def find_open(self, labels: List[str]) -> Optional[IssueTicket]:
        response = self._request(
            "GET",
            f"/repos/{self.repository}/issues",
            params={"state": "open", "labels": ",".join(labels), "per_page": 10},
        )
        for item in self._payload(response, list):
            # The issues endpoint also lists pull requests
            if "pull_request" in item:
                continue
            return self._ticket(item)
        return None

    def create(self, labels: List[str], title: str, body: str) -> int:
        response = self._request(
            "POST",
            f"/repos/{self.repository}/issues",
            json={"title": title, "body": body, "labels": labels},
        )
        ticket = self._ticket(self._payload(response, dict))
        logger.info(f"Opened drift ticket #{ticket.number}: {ticket.url}")
        return ticket.number

    def comment(self, number: int, body: str) -> None:
        self._request(
            "POST",
            f"/repos/{self.repository}/issues/{number}/comments",
            json={"body": body},
        )
        logger.debug(f"Commented on ticket #{number}")

    def close(self, number: int, comment: str) -> None:
        self.comment(number, comment)
        self._request(
            "PATCH",
            f"/repos/{self.repository}/issues/{number}",
            json={"state": "closed", "state_reason": "completed"},
        )
        logger.info(f"Closed drift ticket #{number}")

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            response = self.session.request(
                method, f"{self.api_url}{path}", timeout=self.timeout, **kwargs
            )
            response.raise_for_status()
            return response
        except requests.RequestException as e:
            raise NotificationFailure(
                f"GitHub {method} {path} failed: {e}",
                context=ErrorContext(operation="issues"),
                cause=e,
            )

    @staticmethod
    def _payload(response: requests.Response, expected: type):
        """Decode a response body, rejecting documents of the wrong shape."""
        try:
            data = response.json()
        except ValueError as e:
            raise NotificationFailure(
                f"GitHub returned a non-JSON response: {e}",
                context=ErrorContext(operation="issues"),
                cause=e,
            )
        if not isinstance(data, expected):
            raise NotificationFailure(
                f"GitHub returned a {type(data).__name__} where a {expected.__name__} was expected",
                context=ErrorContext(operation="issues"),
            )
        return data

    @staticmethod
    def _ticket(item: dict) -> IssueTicket:
        if not isinstance(item, dict) or not isinstance(item.get("number"), int):
            raise NotificationFailure(
                f"GitHub issue without a number: {item!r:.200}",
                context=ErrorContext(operation="issues"),
            )
        return IssueTicket(
            number=item["number"],
            title=item.get("title", ""),
            state=item.get("state", "open"),
            labels=[label["name"] if isinstance(label, dict) else label for label in item.get("labels", [])],
            url=item.get("html_url", ""),
        )
