from __future__ import annotations

import base64
import logging
from typing import Callable, Iterable, List, Optional, Tuple

import requests

from llm_gateway import Attachment

from . import config
from .models import Assignment, StoredFile

_log = logging.getLogger(__name__)

FetchFile = Callable[[str], Tuple[bytes, str]]


class ContextAssemblyError(RuntimeError):
    pass


def fetch_file_bytes(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout_sec: float = config.FILE_FETCH_TIMEOUT_SEC,
) -> Tuple[bytes, str]:
    http = session or requests
    resp = http.get(url, timeout=timeout_sec)
    resp.raise_for_status()
    content_type = (resp.headers.get("content-type") or "").split(";")[0].strip()
    return resp.content, content_type or config.DEFAULT_FILE_CONTENT_TYPE


def encode_attachment(data: bytes, mime_type: str) -> Attachment:
    return Attachment(data=base64.b64encode(data).decode("ascii"), mime_type=mime_type)


def build_attachments(files: Iterable[StoredFile], fetch_file: FetchFile) -> List[Attachment]:
    attachments: List[Attachment] = []
    for stored in files:
        if not stored.url:
            _log.warning("skipping file without a resolvable url: %s", stored.file_name or stored.storage_id)
            continue
        try:
            data, content_type = fetch_file(stored.url)
        except Exception as exc:
            raise ContextAssemblyError(f"Failed to fetch {stored.file_name or stored.storage_id}: {exc}") from exc
        attachments.append(encode_attachment(data, content_type or stored.content_type or config.DEFAULT_FILE_CONTENT_TYPE))
    return attachments


def build_source_attachments(assignment: Assignment, fetch_file: FetchFile) -> List[Attachment]:
    return build_attachments(assignment.assignment_files, fetch_file)


def build_answer_context(assignment: Assignment, fetch_file: FetchFile) -> List[Attachment]:
    """Shared read-only payload for every answer call of one assignment."""
    return build_attachments([*assignment.assignment_files, *assignment.notes], fetch_file)
