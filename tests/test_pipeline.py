"""Tests for the pipeline orchestrator.

Tests PipelineOrchestrator.run() end to end with a mocked Gmail client and
mocked inference endpoints: event sequence, pre-flight checks, progress
monotonicity, failure handling and cancellation.
"""

import asyncio
import base64
import time
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from jobtracker.classifier.extractor import JobExtractor
from jobtracker.classifier.job_classifier import BatchClassifier
from jobtracker.config_schema import AppConfig
from jobtracker.core.errors import InferenceError, MailAPIError
from jobtracker.engine.pipeline import (
    CompletionEvent,
    ErrorEvent,
    PipelineOrchestrator,
    PipelineRequest,
    ProgressEvent,
    sender_address,
)
from jobtracker.gmail.client import GmailClient
from jobtracker.gmail.models import GmailCredentials, RawMessage

# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

START = datetime(2024, 1, 1, tzinfo=UTC)
END = datetime(2024, 2, 1, tzinfo=UTC)


def _make_raw_message(
    msg_id: str,
    sender: str = "Recruiter <jobs@acme.com>",
    subject: str = "Thank you for applying",
    body: str = "We received your application for Backend Engineer.",
    internal_date: str = "1704110400000",
) -> RawMessage:
    """Create a RawMessage the way the Gmail client would return it."""
    data = base64.urlsafe_b64encode(body.encode()).decode().rstrip("=")
    return RawMessage.from_api(
        {
            "id": msg_id,
            "threadId": f"t-{msg_id}",
            "internalDate": internal_date,
            "snippet": body[:50],
            "payload": {
                "mimeType": "text/plain",
                "headers": [
                    {"name": "From", "value": sender},
                    {"name": "Subject", "value": subject},
                ],
                "body": {"data": data},
            },
        }
    )


def _mock_gmail(messages: list[RawMessage]) -> MagicMock:
    """Mock GmailClient listing ``messages`` on one page."""
    by_id = {m.id: m for m in messages}
    client = MagicMock()

    def list_message_ids(
        query: str, page_size: int = 100, on_page=None, should_stop=None
    ) -> list[str]:
        if on_page:
            on_page(1, len(by_id))
        return list(by_id)

    client.list_message_ids = MagicMock(side_effect=list_message_ids)
    client.get_message = MagicMock(side_effect=lambda message_id: by_id[message_id])
    return client


def _mock_inference(name: str, answer) -> MagicMock:
    """Mock InferenceClient; ``answer(texts)`` returns the batch's entries."""
    client = MagicMock()
    client.name = name
    client.ensure_configured = MagicMock()
    client.infer = MagicMock(side_effect=lambda texts, index: answer(texts))
    return client


def _classify_by_subject(verdicts: dict[str, tuple[str, float]]):
    """Classifier answer keyed by the subject line of each input."""

    def answer(texts: list[str]) -> list[dict[str, Any]]:
        results = []
        for text in texts:
            label, score = verdicts.get(text.split("\n", 1)[0], ("other", 0.99))
            results.append({"label": label, "score": score, "success": True})
        return results

    return answer


def _extract_fixed(company: str = "Acme", role: str = "Backend Engineer"):
    return lambda texts: [{"company": company, "role": role, "success": True} for _ in texts]


async def _collect(orchestrator: PipelineOrchestrator, request: PipelineRequest) -> list:
    return [event async for event in orchestrator.run(request)]


def _request(**overrides: Any) -> PipelineRequest:
    values: dict[str, Any] = {
        "credentials": GmailCredentials(access_token="ya29.token", refresh_token="r"),
        "start": START,
        "end": END,
    }
    values.update(overrides)
    return PipelineRequest(**values)


def _http_response(payload: Any) -> MagicMock:
    """A 200 response from a mocked requests session."""
    response = MagicMock()
    response.status_code = 200
    response.headers = {}
    response.json.return_value = payload
    return response


def _session_backed(
    config: AppConfig, session: MagicMock, classify_client: MagicMock, extract_client: MagicMock
) -> PipelineOrchestrator:
    """Orchestrator whose Gmail client is real and talks to ``session``."""
    return PipelineOrchestrator(
        config,
        gmail_client_factory=lambda credentials: GmailClient(credentials, session=session),
        classifier=BatchClassifier(classify_client, batch_delay=0),
        extractor=JobExtractor(extract_client, batch_delay=0),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def scenario_messages() -> list[RawMessage]:
    """Three messages: one newsletter, one application, one unrelated."""
    return [
        _make_raw_message("a", sender="spam@newsletter.io", subject="Weekly digest"),
        _make_raw_message("b", sender="Acme Careers <careers@acme.com>", subject="Application received"),
        _make_raw_message("c", sender="friend@example.com", subject="Lunch?"),
    ]


@pytest.fixture
def gmail(scenario_messages: list[RawMessage]) -> MagicMock:
    return _mock_gmail(scenario_messages)


@pytest.fixture
def classify_client() -> MagicMock:
    return _mock_inference(
        "classify",
        _classify_by_subject(
            {"Application received": ("applied", 0.9), "Lunch?": ("other", 0.95)}
        ),
    )


@pytest.fixture
def extract_client() -> MagicMock:
    return _mock_inference("extract", _extract_fixed())


@pytest.fixture
def orchestrator(
    sample_config: AppConfig,
    gmail: MagicMock,
    classify_client: MagicMock,
    extract_client: MagicMock,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        sample_config,
        gmail_client_factory=lambda credentials: gmail,
        classifier=BatchClassifier(classify_client, batch_delay=0),
        extractor=JobExtractor(extract_client, batch_delay=0),
    )


# ---------------------------------------------------------------------------
# End-to-end
# ---------------------------------------------------------------------------


class TestEndToEnd:
    """The three-message scenario."""

    async def test_scenario(self, orchestrator: PipelineOrchestrator) -> None:
        events = await _collect(orchestrator, _request(excluded_senders=["newsletter"]))

        completion = events[-1]
        assert isinstance(completion, CompletionEvent)
        assert completion.total_emails == 3
        assert completion.excluded_count == 1
        assert completion.processed == 1

        record = completion.applications[0]
        assert record.id == "gmail-b"
        assert record.status == "applied"
        assert record.confidence == 0.9
        assert record.company == "Acme"
        assert record.role == "Backend Engineer"
        assert record.email == "careers@acme.com"

    async def test_excluded_message_never_reaches_inference(
        self, orchestrator: PipelineOrchestrator, classify_client: MagicMock
    ) -> None:
        await _collect(orchestrator, _request(excluded_senders=["newsletter"]))

        submitted = [t for call in classify_client.infer.call_args_list for t in call.args[0]]
        assert len(submitted) == 2
        assert not any(t.startswith("Weekly digest") for t in submitted)

    async def test_only_job_related_are_extracted(
        self, orchestrator: PipelineOrchestrator, extract_client: MagicMock
    ) -> None:
        await _collect(orchestrator, _request(excluded_senders=["newsletter"]))

        submitted = [t for call in extract_client.infer.call_args_list for t in call.args[0]]
        assert len(submitted) == 1
        assert submitted[0].startswith("Application received\n")

    async def test_wire_form(self, orchestrator: PipelineOrchestrator) -> None:
        events = await _collect(orchestrator, _request(excluded_senders=["newsletter"]))

        data = events[-1].to_dict()
        assert data["type"] == "complete"
        assert data["success"] is True
        assert data["processed"] == 1
        assert data["totalEmails"] == 3
        assert data["excludedCount"] == 1
        record = data["applications"][0]
        assert record["classification"] == {"label": "applied", "confidence": 0.9}
        assert record["bodyPreview"].startswith("We received your application")
        assert record["date"] == "2024-01-01T12:00:00+00:00"

    async def test_request_overrides_labels_and_threshold(
        self, orchestrator: PipelineOrchestrator
    ) -> None:
        events = await _collect(
            orchestrator,
            _request(job_labels=["other"], confidence_threshold=0.96),
        )

        # "Lunch?" is other/0.95 (below 0.96); "Weekly digest" defaults to other/0.99
        completion = events[-1]
        assert [r.id for r in completion.applications] == ["gmail-a"]
        assert completion.applications[0].status == "other"

    async def test_config_exclusions_apply(
        self,
        sample_config_dict: dict[str, Any],
        gmail: MagicMock,
        classify_client: MagicMock,
        extract_client: MagicMock,
    ) -> None:
        sample_config_dict["pipeline"]["excluded_senders"] = ["@acme.com"]
        orchestrator = PipelineOrchestrator(
            AppConfig(**sample_config_dict),
            gmail_client_factory=lambda credentials: gmail,
            classifier=BatchClassifier(classify_client, batch_delay=0),
            extractor=JobExtractor(extract_client, batch_delay=0),
        )

        events = await _collect(orchestrator, _request(excluded_senders=["newsletter"]))

        assert events[-1].excluded_count == 2
        assert events[-1].processed == 0

    async def test_failed_fetch_not_counted(
        self, orchestrator: PipelineOrchestrator, gmail: MagicMock
    ) -> None:
        original = gmail.get_message.side_effect

        def get_message(message_id: str) -> RawMessage:
            if message_id == "c":
                raise MailAPIError("Resource not found (404)", status_code=404)
            return original(message_id)

        gmail.get_message.side_effect = get_message

        events = await _collect(orchestrator, _request())

        assert events[-1].total_emails == 2
        assert events[-1].processed == 1

    async def test_long_body_preview_is_truncated(
        self, sample_config: AppConfig, classify_client: MagicMock, extract_client: MagicMock
    ) -> None:
        gmail = _mock_gmail(
            [_make_raw_message("long", subject="Application received", body="y" * 1000)]
        )
        orchestrator = PipelineOrchestrator(
            sample_config,
            gmail_client_factory=lambda credentials: gmail,
            classifier=BatchClassifier(classify_client, batch_delay=0),
            extractor=JobExtractor(extract_client, batch_delay=0),
        )

        events = await _collect(orchestrator, _request())

        assert events[-1].applications[0].body_preview == "y" * 200

    async def test_empty_mailbox(
        self, sample_config: AppConfig, classify_client: MagicMock, extract_client: MagicMock
    ) -> None:
        orchestrator = PipelineOrchestrator(
            sample_config,
            gmail_client_factory=lambda credentials: _mock_gmail([]),
            classifier=BatchClassifier(classify_client, batch_delay=0),
            extractor=JobExtractor(extract_client, batch_delay=0),
        )

        events = await _collect(orchestrator, _request())

        assert isinstance(events[-1], CompletionEvent)
        assert events[-1].total_emails == 0
        classify_client.infer.assert_not_called()


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


class TestProgress:
    """Event sequence and monotonicity."""

    async def test_monotonic_and_single_terminal(
        self,
        sample_config_dict: dict[str, Any],
        classify_client: MagicMock,
        extract_client: MagicMock,
    ) -> None:
        sample_config_dict["gmail"]["fetch_chunk_size"] = 3
        messages = [
            _make_raw_message(f"m{i}", subject="Application received" if i % 2 else "Other")
            for i in range(10)
        ]
        orchestrator = PipelineOrchestrator(
            AppConfig(**sample_config_dict),
            gmail_client_factory=lambda credentials: _mock_gmail(messages),
            classifier=BatchClassifier(classify_client, batch_size=3, batch_delay=0),
            extractor=JobExtractor(extract_client, batch_size=2, batch_delay=0),
        )

        events = await _collect(orchestrator, _request())

        progress = [e for e in events if isinstance(e, ProgressEvent)]
        values = [e.current for e in progress]
        assert values == sorted(values)
        assert values[0] == 0
        assert progress[0].stage == "connecting"
        assert progress[-1].stage == "complete"
        assert progress[-1].current == 100
        assert values.count(100) == 1
        assert all(e.total == 100 and e.percentage == e.current for e in progress)

        terminals = [e for e in events if not isinstance(e, ProgressEvent)]
        assert len(terminals) == 1
        assert events[-1] is terminals[0]
        assert events[-1].processed == 5

    async def test_stages_in_order(self, orchestrator: PipelineOrchestrator) -> None:
        events = await _collect(orchestrator, _request())

        stages: list[str] = []
        for event in events:
            if isinstance(event, ProgressEvent) and (not stages or stages[-1] != event.stage):
                stages.append(event.stage)
        assert stages == [
            "connecting",
            "listing",
            "fetching",
            "filtering",
            "classifying",
            "extracting",
            "assembling",
            "complete",
        ]

    async def test_progress_wire_form(self, orchestrator: PipelineOrchestrator) -> None:
        events = await _collect(orchestrator, _request())
        assert events[0].to_dict() == {
            "type": "progress",
            "stage": "connecting",
            "current": 0,
            "total": 100,
            "percentage": 0,
        }


# ---------------------------------------------------------------------------
# Pre-flight
# ---------------------------------------------------------------------------


class TestPreflight:
    """Checks that must fail before any external call."""

    @pytest.fixture
    def factory(self, gmail: MagicMock) -> MagicMock:
        return MagicMock(return_value=gmail)

    @pytest.fixture
    def guarded(
        self,
        sample_config: AppConfig,
        factory: MagicMock,
        classify_client: MagicMock,
        extract_client: MagicMock,
    ) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            sample_config,
            gmail_client_factory=factory,
            classifier=BatchClassifier(classify_client, batch_delay=0),
            extractor=JobExtractor(extract_client, batch_delay=0),
        )

    def _assert_single_error(self, events: list, fragment: str) -> None:
        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert fragment in events[0].message

    async def test_inverted_range_makes_no_calls(
        self,
        guarded: PipelineOrchestrator,
        factory: MagicMock,
        gmail: MagicMock,
        classify_client: MagicMock,
    ) -> None:
        events = await _collect(guarded, _request(start=END, end=START))

        self._assert_single_error(events, "must be before")
        factory.assert_not_called()
        gmail.list_message_ids.assert_not_called()
        classify_client.infer.assert_not_called()

    async def test_equal_dates_rejected(self, guarded: PipelineOrchestrator) -> None:
        events = await _collect(guarded, _request(start=START, end=START))
        self._assert_single_error(events, "must be before")

    async def test_missing_dates(self, guarded: PipelineOrchestrator, factory: MagicMock) -> None:
        events = await _collect(guarded, _request(start=None))
        self._assert_single_error(events, "required")
        factory.assert_not_called()

    async def test_malformed_date_string(
        self, guarded: PipelineOrchestrator, factory: MagicMock
    ) -> None:
        events = await _collect(guarded, _request(end="2024-13-45"))
        self._assert_single_error(events, "Invalid end date '2024-13-45'")
        factory.assert_not_called()

    async def test_iso_date_strings_accepted(
        self, guarded: PipelineOrchestrator, gmail: MagicMock
    ) -> None:
        events = await _collect(guarded, _request(start="2024-01-01", end="2024-02-01T00:00:00Z"))

        assert isinstance(events[-1], CompletionEvent)
        query = gmail.list_message_ids.call_args.args[0]
        assert "after:1704067200" in query
        assert "before:1706745600" in query

    async def test_missing_session(self, guarded: PipelineOrchestrator, factory: MagicMock) -> None:
        events = await _collect(guarded, _request(credentials=None))
        self._assert_single_error(events, "Not authenticated")
        factory.assert_not_called()

    async def test_empty_access_token(self, guarded: PipelineOrchestrator) -> None:
        events = await _collect(guarded, _request(credentials=GmailCredentials(access_token="")))
        self._assert_single_error(events, "Not authenticated")

    async def test_unconfigured_endpoint(
        self, sample_config_dict: dict[str, Any], factory: MagicMock
    ) -> None:
        sample_config_dict["inference"]["extract_url"] = ""
        orchestrator = PipelineOrchestrator(
            AppConfig(**sample_config_dict), gmail_client_factory=factory
        )

        events = await _collect(orchestrator, _request())

        self._assert_single_error(events, "extract endpoint is not configured")
        factory.assert_not_called()


# ---------------------------------------------------------------------------
# Failures and cancellation
# ---------------------------------------------------------------------------


class TestFailures:
    """Errors after pre-flight end the run with one ErrorEvent."""

    async def test_malformed_classification_batch(
        self,
        sample_config: AppConfig,
        gmail: MagicMock,
        extract_client: MagicMock,
    ) -> None:
        classify_client = _mock_inference("classify", lambda texts: [])
        classify_client.infer.side_effect = InferenceError(
            "The classify endpoint returned 0 results for 3 inputs in batch 1.", batch_index=0
        )
        orchestrator = PipelineOrchestrator(
            sample_config,
            gmail_client_factory=lambda credentials: gmail,
            classifier=BatchClassifier(classify_client, batch_delay=0),
            extractor=JobExtractor(extract_client, batch_delay=0),
        )

        events = await _collect(orchestrator, _request())

        assert isinstance(events[-1], ErrorEvent)
        assert "0 results for 3 inputs" in events[-1].message
        assert not any(isinstance(e, CompletionEvent) for e in events)
        assert all(e.current < 100 for e in events if isinstance(e, ProgressEvent))
        extract_client.infer.assert_not_called()

    async def test_listing_failure(
        self, orchestrator: PipelineOrchestrator, gmail: MagicMock
    ) -> None:
        gmail.list_message_ids.side_effect = MailAPIError(
            "Authentication failed (401): Invalid Credentials.", status_code=401
        )

        events = await _collect(orchestrator, _request())

        assert isinstance(events[-1], ErrorEvent)
        assert "401" in events[-1].message
        gmail.get_message.assert_not_called()

    @pytest.mark.parametrize(
        "failure",
        [
            requests.exceptions.ChunkedEncodingError("connection broken mid-body"),
            None,  # JSON null body
        ],
    )
    async def test_one_bad_message_is_dropped(
        self,
        sample_config: AppConfig,
        classify_client: MagicMock,
        extract_client: MagicMock,
        failure: Exception | None,
    ) -> None:
        body = base64.urlsafe_b64encode(b"We received your application.").decode()
        good = {
            "id": "good",
            "internalDate": "1704110400000",
            "payload": {
                "mimeType": "text/plain",
                "headers": [
                    {"name": "From", "value": "Acme <jobs@acme.com>"},
                    {"name": "Subject", "value": "Application received"},
                ],
                "body": {"data": body},
            },
        }

        def request(method: str, url: str, **kwargs) -> MagicMock:
            if url.endswith("/users/me/messages"):
                return _http_response({"messages": [{"id": "bad"}, {"id": "good"}]})
            if url.endswith("/bad"):
                if failure is not None:
                    raise failure
                return _http_response(None)
            return _http_response(good)

        session = MagicMock()
        session.request.side_effect = request
        orchestrator = _session_backed(sample_config, session, classify_client, extract_client)

        events = await _collect(orchestrator, _request())

        completion = events[-1]
        assert isinstance(completion, CompletionEvent)
        assert completion.total_emails == 1
        assert completion.processed == 1
        assert completion.applications[0].id == "gmail-good"

    async def test_unexpected_exception_becomes_error_event(
        self, orchestrator: PipelineOrchestrator, gmail: MagicMock
    ) -> None:
        gmail.list_message_ids.side_effect = RuntimeError("boom")

        events = await _collect(orchestrator, _request())

        assert isinstance(events[-1], ErrorEvent)
        assert "boom" in events[-1].message
        assert sum(1 for e in events if not isinstance(e, ProgressEvent)) == 1


class TestCancellation:
    """Caller-driven cancellation."""

    async def test_cancelled_before_listing(
        self, orchestrator: PipelineOrchestrator, gmail: MagicMock
    ) -> None:
        cancel = asyncio.Event()
        cancel.set()

        events = await _collect(orchestrator, _request(cancel_event=cancel))

        assert isinstance(events[-1], ErrorEvent)
        assert events[-1].message == "Processing cancelled"
        gmail.list_message_ids.assert_not_called()

    async def test_cancelled_between_stages(
        self, orchestrator: PipelineOrchestrator, gmail: MagicMock
    ) -> None:
        cancel = asyncio.Event()
        listed = gmail.list_message_ids.side_effect

        def list_then_cancel(*args, **kwargs):
            ids = listed(*args, **kwargs)
            cancel.set()
            return ids

        gmail.list_message_ids.side_effect = list_then_cancel

        events = await _collect(orchestrator, _request(cancel_event=cancel))

        assert events[-1] == ErrorEvent(message="Processing cancelled")
        gmail.get_message.assert_not_called()

    async def test_consumer_stopping_early(
        self, orchestrator: PipelineOrchestrator, classify_client: MagicMock
    ) -> None:
        stream = orchestrator.run(_request())

        first = await stream.__anext__()
        await stream.aclose()

        assert isinstance(first, ProgressEvent)
        classify_client.infer.assert_not_called()

    async def test_closing_during_listing_stops_page_requests(
        self,
        sample_config: AppConfig,
        classify_client: MagicMock,
        extract_client: MagicMock,
    ) -> None:
        page_requests = 0

        def endless_pages(method: str, url: str, **kwargs) -> MagicMock:
            nonlocal page_requests
            page_requests += 1
            time.sleep(0.05)
            return _http_response(
                {"messages": [{"id": f"m{page_requests}"}], "nextPageToken": "more"}
            )

        session = MagicMock()
        session.request.side_effect = endless_pages
        orchestrator = _session_backed(sample_config, session, classify_client, extract_client)

        stream = orchestrator.run(_request())
        async for event in stream:
            if isinstance(event, ProgressEvent) and event.stage == "listing":
                break
        await stream.aclose()
        at_close = page_requests

        await asyncio.sleep(0.3)
        settled = page_requests
        await asyncio.sleep(0.2)

        # At most the request already in flight completes
        assert settled <= at_close + 1
        assert page_requests == settled

    async def test_cancel_event_stops_listing(
        self,
        sample_config: AppConfig,
        classify_client: MagicMock,
        extract_client: MagicMock,
    ) -> None:
        cancel = asyncio.Event()
        page_requests = 0

        def endless_pages(method: str, url: str, **kwargs) -> MagicMock:
            nonlocal page_requests
            page_requests += 1
            time.sleep(0.02)
            return _http_response({"messages": [{"id": "m"}], "nextPageToken": "more"})

        session = MagicMock()
        session.request.side_effect = endless_pages
        orchestrator = _session_backed(sample_config, session, classify_client, extract_client)

        events = []
        async for event in orchestrator.run(_request(cancel_event=cancel)):
            events.append(event)
            if isinstance(event, ProgressEvent) and event.stage == "listing" and event.current > 5:
                cancel.set()

        assert events[-1] == ErrorEvent(message="Processing cancelled")
        assert page_requests <= 3


class TestSenderAddress:
    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            ("Acme Careers <careers@acme.com>", "careers@acme.com"),
            ("careers@acme.com", "careers@acme.com"),
            ("", ""),
        ],
    )
    def test_sender_address(self, header: str, expected: str) -> None:
        assert sender_address(header) == expected
