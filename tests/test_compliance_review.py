import base64
import json

import httpx
import pytest

from ib_bridge.schemas.api import Categorization, FileContentInput, FileIdInput, FilePathInput
from ib_bridge.services.compliance_review import ComplianceReviewRunner, format_filter, summarize
from ib_bridge.services.vendor_client import VendorClient
from conftest import FakeClock, FakeSleep, mock_client


def _comment(id, rule, description, page, term="guaranteed"):
    return {
        "id": id,
        "compCheckTerm": term,
        "compCheckExplanation": "Avoid absolute claims",
        "compCheckSentence": f"Returns are {term}.",
        "compCheckSentenceStart": 10,
        "compCheckTermStart": 22,
        "ruleName": rule,
        "ruleDescription": description,
        "compCheckFeedback": "Rephrase",
        "compCheckSortPage": page,
        "annotationInfo": {"x": 1.5, "y": 2.5, "page": page},
        "compCheckStatus": "open",
        "resolved": False,
    }


COMMENTS = [
    _comment(1, "02-IB-DISCLAIMER", "Financial Product Disclaimer", 1),
    _comment(2, "02-IB-DISCLAIMER", "Financial Product Disclaimer", 2),
    _comment(3, "05-CLAIMS", "Absolute Claims", 1, term="best"),
]


class Vendor:
    def __init__(self, statuses, upload_status=200, create_status=200):
        self.statuses = list(statuses)
        self.upload_status = upload_status
        self.create_status = create_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/file"):
            return httpx.Response(self.upload_status, json={"response": {"_id": "hash-1", "error": 0}})
        if path.endswith("/complianceReview"):
            return httpx.Response(self.create_status, json={"response": {"data": {"_id": "review-1"}}})
        if path.endswith("/complianceReview/review-1"):
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            data = {"_id": "review-1", "status": status}
            if status == "completed":
                data.update(comments=COMMENTS, totalTriggerNum=3, triggeredRuleNum=2)
            if status == "failed":
                data["errorMessage"] = "Document could not be parsed"
            return httpx.Response(200, json={"response": {"data": data}})
        if "filter.limit" in path:
            return httpx.Response(
                200,
                json={
                    "response": {
                        "count": 1,
                        "rows": [
                            {
                                "_id": "f1",
                                "name": "Channel",
                                "required": "1",
                                "multiple": "0",
                                "filterValues": [{"uuid": "u1", "value": "Digital", "sortOrder": 1}],
                            }
                        ],
                    }
                },
            )
        return httpx.Response(404)

    def paths(self):
        return [r.url.path for r in self.requests]


@pytest.fixture
def poll_clock():
    return FakeClock(0.0)


def _runner(ledger, backend, poll_clock):
    return ComplianceReviewRunner(
        VendorClient(product_key="pk-1", http=mock_client(backend)),
        ledger,
        max_wait=300,
        poll_interval=5,
        sleep=FakeSleep(poll_clock),
        clock=poll_clock,
    )


async def test_review_scenario(ledger, vendor_session, poll_clock):
    entry = ledger.register("brochure.pdf", b"%PDF-1.4 test", "application/pdf")
    backend = Vendor(["pending", "pending", "completed"])
    categorization = [Categorization(categoryName="Channel", selectedOptions=["Digital"])]

    result = await _runner(ledger, backend, poll_clock).run(
        vendor_session, FileIdInput(file_id=entry.file_id), categorization=categorization
    )

    assert result["success"] is True
    assert result["status"] == "completed"
    assert result["review_id"] == "review-1"
    assert result["filename"] == "brochure.pdf"
    assert result["total_triggers"] == 3
    assert result["triggered_rules"] == 2
    assert result["processing_time"] == pytest.approx(10)
    assert result["summary"] == {
        "total_issues": 3,
        "issues_by_rule": {
            "02-IB-DISCLAIMER (Financial Product Disclaimer)": 2,
            "05-CLAIMS (Absolute Claims)": 1,
        },
        "issues_by_page": {"1": 2, "2": 1},
    }
    first = result["comments"][0]
    assert first["term"] == "guaranteed"
    assert first["rule_description"] == "Financial Product Disclaimer"
    assert first["position"] == {"x": 1.5, "y": 2.5}
    assert first["page"] == 1

    # The upload is gone once the review has used it.
    assert ledger.get(entry.file_id) is None
    assert ledger.consume(entry.file_id) is None

    status_checks = [p for p in backend.paths() if p.endswith("/complianceReview/review-1")]
    assert len(status_checks) == 3

    upload, create = backend.requests[0], backend.requests[1]
    assert upload.url.params["target"] == "complianceReview"
    assert upload.url.params["productkey"] == "pk-1"
    assert upload.headers["sid"] == vendor_session.sid
    assert b"%PDF-1.4 test" in upload.content
    body = json.loads(create.content)
    assert body["data"]["fileHash"] == "hash-1"
    assert body["data"]["documentId"] == "brochure.pdf"
    assert body["data"]["categorisation"] == [{"categoryName": "Channel", "selectedOptions": ["Digital"]}]


async def test_timeout_is_not_an_error_and_keeps_upload(ledger, vendor_session, poll_clock):
    entry = ledger.register("brochure.pdf", b"data", "application/pdf")
    backend = Vendor(["pending"])

    result = await _runner(ledger, backend, poll_clock).run(
        vendor_session, FileIdInput(file_id=entry.file_id), max_wait=12, poll_interval=5
    )

    assert result["success"] is False
    assert result["error"] == "job_timeout"
    assert result["status"] == "pending"
    assert result["review_id"] == "review-1"
    assert result["retryable"] is True
    assert "review-1" in result["message"]
    assert ledger.get(entry.file_id) is entry


async def test_failed_review(ledger, vendor_session, poll_clock):
    entry = ledger.register("brochure.pdf", b"data", "application/pdf")
    backend = Vendor(["pending", "failed"])

    result = await _runner(ledger, backend, poll_clock).run(vendor_session, FileIdInput(file_id=entry.file_id))

    assert result["error"] == "job_failed"
    assert result["status"] == "failed"
    assert result["message"] == "Document could not be parsed"


async def test_unknown_upload(ledger, vendor_session, poll_clock):
    backend = Vendor(["completed"])
    result = await _runner(ledger, backend, poll_clock).run(vendor_session, FileIdInput(file_id="nope"))

    assert result["error"] == "upload_not_found"
    assert backend.requests == []


async def test_consumed_upload_cannot_be_reused(ledger, vendor_session, poll_clock):
    entry = ledger.register("brochure.pdf", b"data", "application/pdf")
    runner = _runner(ledger, Vendor(["completed"]), poll_clock)
    assert (await runner.run(vendor_session, FileIdInput(file_id=entry.file_id)))["success"]

    again = await runner.run(vendor_session, FileIdInput(file_id=entry.file_id))
    assert again["error"] == "upload_not_found"


async def test_upload_failure(ledger, vendor_session, poll_clock):
    backend = Vendor(["completed"], upload_status=500)
    content = base64.b64encode(b"hello").decode()
    result = await _runner(ledger, backend, poll_clock).run(
        vendor_session, FileContentInput(content=content, filename="a.pdf")
    )
    assert result["error"] == "upload_failed"
    assert result["filename"] == "a.pdf"


async def test_create_failure(ledger, vendor_session, poll_clock):
    backend = Vendor(["completed"], create_status=500)
    content = base64.b64encode(b"hello").decode()
    result = await _runner(ledger, backend, poll_clock).run(
        vendor_session, FileContentInput(content=content, filename="a.pdf")
    )
    assert result["error"] == "review_create_failed"


async def test_path_input(ledger, vendor_session, poll_clock, tmp_path):
    path = tmp_path / "local.docx"
    path.write_bytes(b"docx")
    result = await _runner(ledger, Vendor(["completed"]), poll_clock).run(vendor_session, FilePathInput(path=str(path)))
    assert result["success"]
    assert result["filename"] == "local.docx"


async def test_invalid_base64(ledger, vendor_session, poll_clock):
    result = await _runner(ledger, Vendor(["completed"]), poll_clock).run(
        vendor_session, FileContentInput(content="***", filename="a.pdf")
    )
    assert result["error"] == "invalid_request"


async def test_filters(ledger, vendor_session, poll_clock):
    result = await _runner(ledger, Vendor(["completed"]), poll_clock).filters(vendor_session)
    assert result == {
        "success": True,
        "filters": [
            {
                "id": "f1",
                "name": "Channel",
                "required": True,
                "multiple": False,
                "values": [{"uuid": "u1", "value": "Digital"}],
            }
        ],
    }


def test_format_filter_accepts_booleans():
    row = {"_id": "f", "name": "Market", "required": True, "multiple": False, "filterValues": []}
    assert format_filter(row)["required"] is True
    assert format_filter(row)["multiple"] is False


def test_summarize_empty():
    assert summarize([]) == {"total_issues": 0, "issues_by_rule": {}, "issues_by_page": {}}
