"""
sap_gateway.odata.batch - OData V2 $batch codec
================================================

Encodes a list of operations into one ``multipart/mixed`` body, either as
independent parts or wrapped in a single changeset (applied atomically by
the Gateway), and decodes the multipart response back into one result
per operation, in input order.

Bodies are CRLF-delimited on the way out; LF-only responses are accepted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlencode
import json
import logging
import re
import uuid

from sap_gateway.core.errors import ProtocolDecodeError, ValidationError

logger = logging.getLogger("sap_gateway.batch")

CRLF = "\r\n"
DEFAULT_BATCH_SIZE = 100

_ENTITY_SET_RE = re.compile(r"^[a-zA-Z0-9_]+$")
_STATUS_LINE_RE = re.compile(r"^HTTP/\d\.\d\s+(\d{3})")
_BOUNDARY_RE = re.compile(r"boundary=\"?([^\";\s]+)\"?", re.I)


class BatchOperationType(str, Enum):
    """Operation kind; the value is the HTTP method used inside the batch."""
    CREATE = "POST"
    UPDATE = "PATCH"
    DELETE = "DELETE"
    GET = "GET"


@dataclass
class BatchOperation:
    """
    One operation inside a ``$batch`` request.

    Attributes
    ----------
    type : BatchOperationType
        CREATE, UPDATE, DELETE or GET
    entity_set : str
        Target entity set
    entity_key : str, optional
        Key predicate without parentheses, e.g. ``"'4711'"``; required for
        UPDATE and DELETE
    data : dict, optional
        Payload; required for CREATE and UPDATE
    query_params : dict, optional
        Query options appended to the operation URL
    headers : dict, optional
        Extra per-operation headers
    """
    type: BatchOperationType
    entity_set: str
    entity_key: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    query_params: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None


@dataclass
class EncodedBatch:
    body: str
    content_type: str
    boundary: str


@dataclass
class BatchResult:
    """
    Outcome of one operation.

    ``index`` is the operation's position in the caller's original list.
    """
    index: int
    operation: Optional[BatchOperation]
    success: bool
    status_code: int
    data: Any = None
    error: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class BatchResponse:
    success: bool
    results: List[BatchResult] = field(default_factory=list)

    @property
    def failed(self) -> List[BatchResult]:
        return [r for r in self.results if not r.success]


def boundary_from_content_type(content_type: str) -> Optional[str]:
    """``multipart/mixed; boundary=abc`` -> ``abc``."""
    m = _BOUNDARY_RE.search(content_type or "")
    return m.group(1) if m else None


class BatchRequestBuilder:
    """
    Build and parse OData V2 ``$batch`` payloads.

    Examples
    --------
    >>> builder = BatchRequestBuilder()
    >>> ops = [
    ...     BatchOperation(BatchOperationType.CREATE, "A_Product", data={"Product": "P1"}),
    ...     BatchOperation(BatchOperationType.DELETE, "A_Product", entity_key="'P0'"),
    ... ]
    >>> batch = builder.build_batch_request(ops, "", use_change_set=True)
    >>> batch.content_type.startswith("multipart/mixed; boundary=batch_")
    True
    """

    BATCH_PREFIX = "batch_"
    CHANGESET_PREFIX = "changeset_"

    # ---------------- validation ----------------

    @staticmethod
    def validate_operations(
        operations: Sequence[BatchOperation],
        use_change_set: bool = False,
    ) -> List[str]:
        """Return one message per problem found; an empty list means valid."""
        errors: List[str] = []
        for i, op in enumerate(operations):
            op_type = op.type
            if not isinstance(op_type, BatchOperationType):
                errors.append(f"Operation {i}: Missing or invalid type")
                continue
            if not op.entity_set:
                errors.append(f"Operation {i}: Missing entitySet")
            elif not _ENTITY_SET_RE.match(op.entity_set):
                errors.append(f"Operation {i}: Invalid entitySet name")
            if op_type in (BatchOperationType.CREATE, BatchOperationType.UPDATE) and op.data is None:
                errors.append(f"Operation {i}: Missing data for {op_type.value}")
            if op_type in (BatchOperationType.UPDATE, BatchOperationType.DELETE) and not op.entity_key:
                errors.append(f"Operation {i}: Missing entityKey for {op_type.value}")
            if use_change_set and op_type is BatchOperationType.GET:
                errors.append(f"Operation {i}: GET is not allowed inside a changeset")
        return errors

    @staticmethod
    def split_into_batches(
        operations: Sequence[BatchOperation],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> List[List[BatchOperation]]:
        if batch_size < 1:
            raise ValidationError("batch_size must be at least 1")
        return [list(operations[i:i + batch_size]) for i in range(0, len(operations), batch_size)]

    # ---------------- encoding ----------------

    @staticmethod
    def _operation_url(op: BatchOperation, service_path: str) -> str:
        prefix = service_path.rstrip("/")
        url = f"{prefix}/{op.entity_set}" if prefix else op.entity_set
        if op.entity_key and op.type in (
            BatchOperationType.UPDATE, BatchOperationType.DELETE, BatchOperationType.GET
        ):
            url += f"({op.entity_key})"
        if op.query_params:
            url += "?" + urlencode({k: str(v) for k, v in op.query_params.items()})
        return url

    def _operation_lines(
        self,
        op: BatchOperation,
        service_path: str,
        content_id: Optional[int] = None,
    ) -> List[str]:
        lines = ["Content-Type: application/http", "Content-Transfer-Encoding: binary"]
        if content_id is not None:
            lines.append(f"Content-ID: {content_id}")
        lines.append("")
        lines.append(f"{op.type.value} {self._operation_url(op, service_path)} HTTP/1.1")

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(op.headers or {})
        lines.extend(f"{k}: {v}" for k, v in headers.items())
        lines.append("")
        if op.data is not None and op.type in (BatchOperationType.CREATE, BatchOperationType.UPDATE):
            lines.append(json.dumps(op.data, separators=(",", ":")))
        return lines

    def build_batch_request(
        self,
        operations: Sequence[BatchOperation],
        service_path: str = "",
        use_change_set: bool = False,
    ) -> EncodedBatch:
        """
        Encode ``operations`` as a ``multipart/mixed`` body.

        Parameters
        ----------
        operations : sequence of BatchOperation
            Operations in execution order
        service_path : str
            Prefix for operation URLs; empty gives service-relative URLs
        use_change_set : bool
            Wrap everything in one atomic changeset

        Returns
        -------
        EncodedBatch
            Body, Content-Type header value and the batch boundary

        Raises
        ------
        ValidationError
            If any operation is malformed
        """
        errors = self.validate_operations(operations, use_change_set)
        if errors:
            raise ValidationError("Invalid batch operations: " + "; ".join(errors))
        if not operations:
            raise ValidationError("Invalid batch operations: no operations given")

        boundary = f"{self.BATCH_PREFIX}{uuid.uuid4()}"
        lines: List[str] = []

        if use_change_set:
            cs_boundary = f"{self.CHANGESET_PREFIX}{uuid.uuid4()}"
            lines.append(f"--{boundary}")
            lines.append(f"Content-Type: multipart/mixed; boundary={cs_boundary}")
            lines.append("")
            for i, op in enumerate(operations):
                lines.append(f"--{cs_boundary}")
                lines.extend(self._operation_lines(op, service_path, content_id=i + 1))
            lines.append(f"--{cs_boundary}--")
        else:
            for op in operations:
                lines.append(f"--{boundary}")
                lines.extend(self._operation_lines(op, service_path))
        lines.append(f"--{boundary}--")
        lines.append("")

        return EncodedBatch(
            body=CRLF.join(lines),
            content_type=f"multipart/mixed; boundary={boundary}",
            boundary=boundary,
        )

    # ---------------- decoding ----------------

    @staticmethod
    def _split_parts(text: str, boundary: str) -> List[str]:
        delimiter = f"--{boundary}"
        if delimiter not in text:
            raise ProtocolDecodeError(f"Batch response does not contain boundary {boundary!r}")
        chunks = text.split(delimiter)[1:]
        parts = []
        for chunk in chunks:
            if chunk.startswith("--"):
                break
            chunk = chunk.strip("\n")
            if chunk.strip():
                parts.append(chunk)
        return parts

    @staticmethod
    def _parse_headers(lines: List[str]) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        for line in lines:
            if ":" in line:
                k, v = line.split(":", 1)
                headers[k.strip()] = v.strip()
        return headers

    def _parse_http_part(self, part: str, label: str) -> BatchResult:
        lines = part.split("\n")
        status_idx = next((i for i, l in enumerate(lines) if _STATUS_LINE_RE.match(l.strip())), None)
        if status_idx is None:
            raise ProtocolDecodeError(f"Batch part {label} has no HTTP status line")
        status = int(_STATUS_LINE_RE.match(lines[status_idx].strip()).group(1))
        success = 200 <= status < 300

        rest = lines[status_idx + 1:]
        blank = next((i for i, l in enumerate(rest) if not l.strip()), len(rest))
        headers = self._parse_headers(rest[:blank])
        body_text = "\n".join(rest[blank + 1:]).strip()

        data: Any = None
        error: Optional[str] = None
        if body_text:
            try:
                parsed = json.loads(body_text)
            except ValueError:
                parsed = None
                if success:
                    data = body_text
                else:
                    error = body_text
            if parsed is not None:
                if success:
                    data = parsed
                else:
                    error = _error_message(parsed)
        elif not success:
            error = f"HTTP {status}"

        return BatchResult(
            index=-1, operation=None, success=success, status_code=status,
            data=data, error=error, headers=headers,
        )

    def _parse_part(self, part: str, number: int) -> List[BatchResult]:
        head = part.split("\n\n", 1)[0]
        headers = self._parse_headers(head.split("\n"))
        ctype = next((v for k, v in headers.items() if k.lower() == "content-type"), "")
        if ctype.lower().startswith("multipart/mixed"):
            inner = boundary_from_content_type(ctype)
            if not inner:
                raise ProtocolDecodeError(f"Changeset in batch part {number} has no boundary")
            return [
                self._parse_http_part(sub, f"{number}.{i}")
                for i, sub in enumerate(self._split_parts(part, inner), 1)
            ]
        return [self._parse_http_part(part, str(number))]

    def parse_batch_response(
        self,
        text: str,
        boundary: str,
        operations: Optional[Sequence[BatchOperation]] = None,
        use_change_set: bool = False,
        index_offset: int = 0,
    ) -> BatchResponse:
        """
        Decode a ``multipart/mixed`` batch response.

        Parameters
        ----------
        text : str
            Raw response body
        boundary : str
            Boundary from the response Content-Type
        operations : sequence of BatchOperation, optional
            The operations that were sent, for correlation
        use_change_set : bool
            Whether the operations were sent as one changeset; a failed
            changeset fails every operation in it
        index_offset : int
            Added to each result index (sub-batch position in a larger list)

        Returns
        -------
        BatchResponse

        Raises
        ------
        ProtocolDecodeError
            If the boundary is missing, a part (numbered from 1) carries no
            HTTP status line, or the number of responses does not match the
            operations sent
        """
        normalized = (text or "").replace("\r\n", "\n")
        results: List[BatchResult] = []
        for number, part in enumerate(self._split_parts(normalized, boundary), 1):
            results.extend(self._parse_part(part, number))
        if not results:
            raise ProtocolDecodeError("Batch response contains no HTTP responses")

        ops = list(operations or [])
        fanned_out = False
        if use_change_set and ops and not all(r.success for r in results):
            logger.debug("Changeset failed; failing all %s operations", len(ops))
            results = self._fan_out_changeset(results, len(ops))
            fanned_out = True
        if ops and not fanned_out and len(results) != len(ops):
            raise ProtocolDecodeError(
                f"Batch returned {len(results)} responses for {len(ops)} operations"
            )

        for i, result in enumerate(results):
            result.index = index_offset + i
            result.operation = ops[i] if ops else None

        return BatchResponse(success=all(r.success for r in results), results=results)

    @staticmethod
    def _fan_out_changeset(results: List[BatchResult], expected: int) -> List[BatchResult]:
        failure = next(r for r in results if not r.success)
        message = failure.error or f"HTTP {failure.status_code}"
        return [
            BatchResult(
                index=-1, operation=None, success=False,
                status_code=failure.status_code,
                error=f"Changeset failed: {message}",
                headers=dict(failure.headers),
            )
            for _ in range(expected)
        ]


def _error_message(parsed: Any) -> str:
    if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
        message = parsed["error"].get("message")
        if isinstance(message, dict) and message.get("value"):
            return str(message["value"])
        if isinstance(message, str) and message:
            return message
    return "Unknown error"
