"""
Vendor resources exposed as MCP resources.

URIs have the form ib://<clientId>/resource/<resourceId>. Listing pages
through the vendor's resource search with an opaque cursor that encodes the
offset and search keywords.
"""

import base64
import binascii
import json
import logging
import re
from typing import Any, Dict, Optional, Tuple

from ib_bridge.models.session import VendorSession
from .vendor_client import VendorClient

logger = logging.getLogger(__name__)

PAGE_SIZE = 100
READ_SCAN_LIMIT = 1000

_URI_RE = re.compile(r"^ib://([^/]+)/resource/([^/]+)$")

MIME_TYPES = {
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "ppt": "application/vnd.ms-powerpoint",
    "pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "zip": "application/zip",
    "txt": "text/plain",
}


class ResourceNotFound(LookupError):
    pass


def mime_type_for(file_type: Optional[str]) -> str:
    return MIME_TYPES.get((file_type or "").lower(), "application/octet-stream")


def build_resource_uri(client_id: str, resource_id: str) -> str:
    return f"ib://{client_id}/resource/{resource_id}"


def parse_resource_uri(uri: str) -> Tuple[str, str]:
    match = _URI_RE.match(uri or "")
    if not match:
        raise ValueError(f"Invalid resource URI format: {uri}. Expected: ib://{{clientId}}/resource/{{resourceId}}")
    return match.group(1), match.group(2)


def build_cursor(offset: int, keywords: str = "") -> str:
    return base64.b64encode(json.dumps({"offset": offset, "keywords": keywords}).encode()).decode()


def parse_cursor(cursor: Optional[str]) -> Tuple[int, str]:
    """(offset, keywords) from a cursor; malformed cursors restart from the first page."""
    if not cursor:
        return 0, ""
    try:
        data = json.loads(base64.b64decode(cursor))
        return int(data.get("offset") or 0), str(data.get("keywords") or "")
    except (binascii.Error, ValueError, TypeError, AttributeError):
        logger.info("Ignoring malformed resource cursor")
        return 0, ""


def _describe(row: Dict[str, Any]) -> str:
    updated = str(row.get("lastUpdateTime") or "")[:10]
    return f"{row.get('fancyFileType')} - {row.get('fancyFileSize')} - Updated: {updated}"


class ResourceBrowser:
    def __init__(self, vendor: VendorClient) -> None:
        self.vendor = vendor

    async def list_page(self, session: VendorSession, cursor: Optional[str] = None) -> Dict[str, Any]:
        offset, keywords = parse_cursor(cursor)
        logger.info("Listing resources for client %s (offset=%d, keywords=%r)", session.client_id, offset, keywords)
        response = await self.vendor.list_resources(session, keywords=keywords, limit=PAGE_SIZE, offset=offset)
        rows = response.get("rows") or []
        count = int(response.get("count") or 0)

        result: Dict[str, Any] = {
            "resources": [
                {
                    "uri": build_resource_uri(session.client_id, row["_id"]),
                    "name": row.get("name"),
                    "description": _describe(row),
                    "mimeType": mime_type_for((row.get("file") or {}).get("type")),
                    "annotations": {
                        "audience": ["user", "assistant"],
                        "priority": 0.5,
                        "lastModified": row.get("lastUpdateTime"),
                    },
                }
                for row in rows
            ]
        }
        if offset + len(rows) < count:
            result["nextCursor"] = build_cursor(offset + PAGE_SIZE, keywords)
        return result

    async def read_resource(self, session: VendorSession, uri: str) -> Dict[str, Any]:
        client_id, resource_id = parse_resource_uri(uri)
        response = await self.vendor.list_resources(session, limit=READ_SCAN_LIMIT, offset=0)
        row = next((r for r in response.get("rows") or [] if r.get("_id") == resource_id), None)
        if row is None:
            raise ResourceNotFound(f"Resource not found: {uri}")

        file_info = row.get("file") or {}
        width, height = row.get("imageWidth"), row.get("imageHeight")
        content = {
            "type": "resource",
            "id": row["_id"],
            "name": row.get("name"),
            "file_type": file_info.get("type"),
            "file_size": row.get("fancyFileSize"),
            "file_size_bytes": file_info.get("size"),
            "thumbnail": row.get("thumbnail"),
            "tags": row.get("tags"),
            "folder_path": row.get("folderPath"),
            "download_url": f"https://{session.client_id}.intelligencebank.com/download/{row['_id']}",
            "metadata": {
                "created": row.get("createTime"),
                "updated": row.get("lastUpdateTime"),
                "creator": row.get("creatorName"),
                "dimensions": f"{width}x{height}" if width and height else None,
                "hash": file_info.get("hash"),
            },
            "allowed_actions": row.get("allowedActions"),
        }
        return {
            "contents": [
                {
                    "uri": build_resource_uri(client_id, resource_id),
                    "mimeType": "application/json",
                    "text": json.dumps(content, indent=2),
                }
            ]
        }
