"""
pdp_core.pipeline.documents
---------------------------
Contracts with the document side of the application.

The pipeline never inspects invoices or credit notes itself. It holds a
DocumentRef (kind + opaque id), asks a DocumentAssembler for the finalized
artifact, and asks a DocumentResolver for the business object when a
notification needs it.
"""

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Tuple

from pdp_core.pipeline.errors import ArtifactUnavailable
from pdp_core.storage.models import DocumentKind, DocumentRef
from pdp_core.utils import sha256


class DocumentAssembler:
    # Interface. Returns (artifact_path, None) or (None, error_message).
    def produce_artifact(self, ref: DocumentRef) -> Tuple[Optional[str], Optional[str]]:
        raise NotImplementedError


class DocumentResolver:
    # Interface. Single lookup for every document kind.
    def resolve(self, ref: DocumentRef) -> Any:
        raise NotImplementedError


@dataclass(frozen=True)
class Artifact:
    path: str
    content: bytes
    filename: str
    size: int
    file_hash: str


def load_artifact(path: str) -> Artifact:
    p = Path(path)
    try:
        content = p.read_bytes()
    except OSError as e:
        raise ArtifactUnavailable(f"artifact unreadable: {path}: {e.strerror or e}") from e
    return Artifact(
        path=str(p),
        content=content,
        filename=p.name,
        size=len(content),
        file_hash=sha256(content),
    )


def parse_document_ref(value: str) -> DocumentRef:
    """Inverse of ``str(DocumentRef)``: ``"invoice:42"`` -> DocumentRef(INVOICE, "42")."""
    kind, sep, doc_id = value.partition(":")
    if not sep or not doc_id:
        raise ValueError(f"invalid document reference: {value!r}")
    return DocumentRef(DocumentKind(kind), doc_id)
