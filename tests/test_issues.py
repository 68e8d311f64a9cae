from unittest.mock import MagicMock

import pytest
import requests

from drift_controller.config.models import IssuesConfig
from drift_controller.notify.issues import GitHubIssueTracker, drift_labels
from drift_controller.utils.errors import ErrorCategory, NotificationFailure


def _response(payload=None, status=200):
    response = MagicMock()
    response.json.return_value = payload
    response.raise_for_status.side_effect = (
        requests.HTTPError(f"{status} error") if status >= 400 else None
    )
    return response


@pytest.fixture
def session():
    session = MagicMock()
    session.headers = {}
    return session


@pytest.fixture
def tracker(session):
    config = IssuesConfig(enabled=True, repository="acme/infra", token="ghp_test")
    return GitHubIssueTracker(config, session=session)


def test_drift_labels_always_include_required_labels():
    assert drift_labels("prod") == ["drift-detection", "auto-fix", "prod"]
    assert drift_labels("prod", ["infra", "auto-fix"]) == ["drift-detection", "auto-fix", "prod", "infra"]


def test_token_from_environment(session, monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_env")

    GitHubIssueTracker(IssuesConfig(enabled=True, repository="acme/infra"), session=session)

    assert session.headers["Authorization"] == "Bearer ghp_env"


def test_find_open_skips_pull_requests(tracker, session):
    session.request.return_value = _response([
        {"number": 7, "title": "PR", "pull_request": {}, "labels": []},
        {
            "number": 3,
            "title": "Infrastructure drift detected in dev",
            "state": "open",
            "labels": [{"name": "drift-detection"}, {"name": "dev"}],
            "html_url": "https://github.com/acme/infra/issues/3",
        },
    ])

    ticket = tracker.find_open(["drift-detection", "auto-fix", "dev"])

    assert ticket.number == 3
    assert ticket.labels == ["drift-detection", "dev"]
    assert ticket.is_open()
    method, url = session.request.call_args.args
    assert (method, url) == ("GET", "https://api.github.com/repos/acme/infra/issues")
    assert session.request.call_args.kwargs["params"]["labels"] == "drift-detection,auto-fix,dev"


def test_find_open_returns_none_without_matches(tracker, session):
    session.request.return_value = _response([])

    assert tracker.find_open(["drift-detection"]) is None


def test_create_returns_ticket_number(tracker, session):
    session.request.return_value = _response({"number": 12, "title": "t", "html_url": "u"})

    assert tracker.create(["drift-detection", "dev"], "title", "body") == 12
    assert session.request.call_args.kwargs["json"] == {
        "title": "title",
        "body": "body",
        "labels": ["drift-detection", "dev"],
    }


def test_close_comments_then_closes(tracker, session):
    session.request.return_value = _response({})

    tracker.close(12, "resolved")

    calls = session.request.call_args_list
    assert [call.args[0] for call in calls] == ["POST", "PATCH"]
    assert calls[0].args[1].endswith("/issues/12/comments")
    assert calls[1].kwargs["json"]["state"] == "closed"


def test_http_errors_become_notification_failures(tracker, session):
    session.request.return_value = _response(status=502)

    with pytest.raises(NotificationFailure) as exc_info:
        tracker.comment(12, "body")

    assert exc_info.value.category == ErrorCategory.NOTIFICATION


def test_connection_errors_become_notification_failures(tracker, session):
    session.request.side_effect = requests.ConnectionError("refused")

    with pytest.raises(NotificationFailure):
        tracker.find_open(["drift-detection"])


@pytest.mark.parametrize("payload", [{"message": "Moved Permanently"}, ["not an issue"], None])
def test_find_open_rejects_unexpected_documents(tracker, session, payload):
    session.request.return_value = _response(payload)

    with pytest.raises(NotificationFailure):
        tracker.find_open(["drift-detection"])


def test_create_rejects_unexpected_documents(tracker, session):
    session.request.return_value = _response([{"number": 12}])
    with pytest.raises(NotificationFailure, match="where a dict was expected"):
        tracker.create(["drift-detection"], "title", "body")

    session.request.return_value = _response({"title": "t"})
    with pytest.raises(NotificationFailure, match="without a number"):
        tracker.create(["drift-detection"], "title", "body")


def test_invalid_json_becomes_notification_failure(tracker, session):
    response = _response()
    response.json.side_effect = ValueError("Expecting value")
    session.request.return_value = response

    with pytest.raises(NotificationFailure, match="non-JSON"):
        tracker.find_open(["drift-detection"])
