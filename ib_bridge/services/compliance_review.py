"""
File compliance review workflow.

upload -> create review -> poll -> format. The uploaded file handle is
consumed from the ledger only once the review has completed, so a timed out
review can still be inspected later by its review id.
"""

import asyncio
import base64
import binascii
import logging
import mimetypes
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from ib_bridge.models.session import VendorSession
from ib_bridge.schemas.api import Categorization, FileContentInput, FileIdInput, FilePathInput
from ib_bridge.utils.errors import BridgeError, ErrorCode
from .job_poller import poll_until_terminal
from .upload_ledger import UploadLedger
from .vendor_client import VendorClient

logger = logging.getLogger(__name__)


@dataclass
class ReviewFile:
    filename: str
    content: bytes
    mime_type: str
    file_id: Optional[str] = None


def guess_mime_type(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or "application/octet-stream"


def _flag(value: Any) -> bool:
    return value is True or value == "1" or value == 1


def format_comment(comment: Dict[str, Any]) -> Dict[str, Any]:
    annotation = comment.get("annotationInfo") or {}
    return {
        "id": comment.get("id"),
        "term": comment.get("compCheckTerm"),
        "explanation": comment.get("compCheckExplanation"),
        "sentence": comment.get("compCheckSentence"),
        "sentence_start": comment.get("compCheckSentenceStart"),
        "term_start": comment.get("compCheckTermStart"),
        "rule_name": comment.get("ruleName"),
        "rule_description": comment.get("ruleDescription"),
        "feedback": comment.get("compCheckFeedback"),
        "page": comment.get("compCheckSortPage"),
        "position": {"x": annotation.get("x"), "y": annotation.get("y")},
        "status": comment.get("compCheckStatus"),
        "resolved": bool(comment.get("resolved", False)),
    }


def summarize(comments: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    by_rule = Counter(f"{c['rule_name']} ({c['rule_description']})" for c in comments)
    by_page = Counter(str(c["page"]) for c in comments)
    return {
        "total_issues": len(comments),
        "issues_by_rule": dict(by_rule),
        "issues_by_page": dict(by_page),
    }


def format_filter(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row.get("_id"),
        "name": row.get("name"),
        "required": _flag(row.get("required")),
        "multiple": _flag(row.get("multiple")),
        "values": [{"uuid": v.get("uuid"), "value": v.get("value")} for v in row.get("filterValues") or []],
    }


class ComplianceReviewRunner:
    def __init__(
        self,
        vendor: VendorClient,
        ledger: UploadLedger,
        max_wait: float = 300.0,
        poll_interval: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.vendor = vendor
        self.ledger = ledger
        self.max_wait = max_wait
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.clock = clock

    def resolve_file(self, file: Any) -> ReviewFile:
        """Load the bytes behind any accepted file reference."""
        if isinstance(file, FileIdInput):
            entry = self.ledger.get(file.file_id)
            if entry is None:
                raise BridgeError(
                    ErrorCode.UPLOAD_NOT_FOUND,
                    f"File not found or expired: {file.file_id}. Upload it again with upload_file.",
                )
            return ReviewFile(entry.filename, entry.read_bytes(), entry.mime_type, entry.file_id)

        if isinstance(file, FileContentInput):
            try:
                content = base64.b64decode(file.content, validate=True)
            except binascii.Error as e:
                raise BridgeError(ErrorCode.INVALID_REQUEST, f"File content is not valid base64: {e}") from e
            return ReviewFile(file.filename, content, guess_mime_type(file.filename))

        path = Path(file.path if isinstance(file, FilePathInput) else file)
        try:
            content = path.read_bytes()
        except OSError as e:
            raise BridgeError(ErrorCode.INVALID_REQUEST, f"Cannot read file {path}: {e.strerror}") from e
        return ReviewFile(path.name, content, guess_mime_type(path.name))

    async def run(
        self,
        vendor_session: VendorSession,
        file: Any,
        categorization: Optional[List[Categorization]] = None,
        max_wait: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> Dict[str, Any]:
        started = self.clock()
        max_wait = self.max_wait if max_wait is None else max_wait
        poll_interval = poll_interval or self.poll_interval
        categories = [c.to_vendor() for c in categorization or []]
        result: Dict[str, Any] = {
            "success": False,
            "review_id": "",
            "filename": "",
            "processing_time": 0.0,
            "status": "error",
            "categorization": categories,
        }

        def finish(**fields: Any) -> Dict[str, Any]:
            result.update(fields)
            result["processing_time"] = round(self.clock() - started, 3)
            return result

        try:
            source = self.resolve_file(file)
            result["filename"] = source.filename

            file_hash = await self.vendor.upload_file(vendor_session, source.filename, source.content, source.mime_type)
            logger.info("Uploaded %s for compliance review (hash=%s)", source.filename, file_hash)

            review_id = await self.vendor.create_review(vendor_session, file_hash, source.filename, categories)
            result["review_id"] = review_id
            logger.info("Created compliance review %s", review_id)

            poll = await poll_until_terminal(
                lambda: self.vendor.review_status(vendor_session, review_id),
                max_wait=max_wait,
                interval=poll_interval,
                sleep=self.sleep,
                clock=self.clock,
            )
        except BridgeError as e:
            logger.warning("Compliance review failed: %s", e.message)
            return finish(error=e.code, message=e.message)
        except httpx.HTTPError as e:
            logger.warning("Compliance review request failed: %s", e)
            return finish(error=ErrorCode.SERVER_ERROR.value, message=f"Request failed: {e}")
        except Exception as e:
            logger.exception("Unexpected error during compliance review")
            return finish(error=ErrorCode.SERVER_ERROR.value, message=str(e))

        data = poll.value or {}
        if poll.timed_out:
            logger.info("Review %s still %s after %d checks", review_id, poll.state, poll.checks)
            return finish(
                status=poll.state or "pending",
                error=ErrorCode.JOB_TIMEOUT.value,
                message=(
                    f"Review did not complete within {max_wait:g} seconds ({poll.checks} checks). "
                    f"It continues processing; check it later with review id {review_id}."
                ),
                retryable=True,
            )

        if poll.state != "completed":
            return finish(
                status=poll.state,
                error=ErrorCode.JOB_FAILED.value,
                message=data.get("errorMessage") or data.get("error") or f"Review {poll.state}",
            )

        if source.file_id:
            self.ledger.consume(source.file_id)

        comments = [format_comment(c) for c in data.get("comments") or []]
        return finish(
            success=True,
            status="completed",
            categorization=data.get("categorisation") or categories,
            total_triggers=data.get("totalTriggerNum"),
            triggered_rules=data.get("triggeredRuleNum"),
            comments=comments,
            summary=summarize(comments),
            message=f"Review completed with {len(comments)} findings after {poll.checks} status checks",
        )

    async def filters(self, vendor_session: VendorSession) -> Dict[str, Any]:
        rows = await self.vendor.list_filters(vendor_session)
        return {"success": True, "filters": [format_filter(row) for row in rows]}
