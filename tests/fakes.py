"""Test doubles and sample-file builders shared by the test modules."""

import hashlib
import io
import json
import struct
import threading
import zipfile

import httpx
import numpy as np

from medassist.services.embedder import l2_normalize
from medassist.services.extractors import DRAWING_NS, WORD_NS
from medassist.services.llm import ChatCompletionClient


class HashEmbeddings:
    """Deterministic embeddings seeded from the text's SHA-256."""

    def __init__(self, dimensions: int = 16, *, fail_once: set[str] | None = None) -> None:
        self._dimensions = dimensions
        self.fail_once = set(fail_once or ())
        self.calls = 0
        self._lock = threading.Lock()

    @property
    def model_name(self) -> str:
        return "hash-test"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def embed(self, text: str) -> np.ndarray:
        with self._lock:
            self.calls += 1
            if text in self.fail_once:
                self.fail_once.discard(text)
                raise RuntimeError("model unavailable")
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        rng = np.random.default_rng(seed)
        return l2_normalize(rng.standard_normal(self._dimensions))

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        return [self.embed(text) for text in texts]


def unit_vector(dimensions: int, index: int) -> np.ndarray:
    vector = np.zeros(dimensions, dtype=np.float32)
    vector[index] = 1.0
    return vector


def build_docx(runs: list[str]) -> bytes:
    body = "".join(f"<w:p><w:r><w:t>{run}</w:t></w:r></w:p>" for run in runs)
    xml = f'<?xml version="1.0"?><w:document xmlns:w="{WORD_NS}"><w:body>{body}</w:body></w:document>'
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")
        archive.writestr("word/document.xml", xml)
    return buffer.getvalue()


def patch_zip_headers(data: bytes, *, method: int | None = None, flags: int = 0) -> bytes:
    """Overwrite the compression method and OR in flag bits on every member header."""
    out = bytearray(data)
    # (signature, offset of the flag bits; the method follows them)
    for signature, offset in ((b"PK\x03\x04", 6), (b"PK\x01\x02", 8)):
        start = out.find(signature)
        while start != -1:
            (current,) = struct.unpack_from("<H", out, start + offset)
            struct.pack_into("<H", out, start + offset, current | flags)
            if method is not None:
                struct.pack_into("<H", out, start + offset + 2, method)
            start = out.find(signature, start + len(signature))
    return bytes(out)


def build_pptx(slides: dict[int, list[str]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")
        for number, runs in slides.items():
            shapes = "".join(f"<a:p><a:r><a:t>{run}</a:t></a:r></a:p>" for run in runs)
            xml = (
                f'<?xml version="1.0"?><p:sld xmlns:a="{DRAWING_NS}" '
                'xmlns:p="http://schemas.openxmlformats.org/presentationml/2006/main">'
                f"<p:cSld><p:spTree><p:sp><p:txBody>{shapes}</p:txBody></p:sp></p:spTree></p:cSld></p:sld>"
            )
            archive.writestr(f"ppt/slides/slide{number}.xml", xml)
        archive.writestr("ppt/slides/_rels/slide1.xml.rels", "<Relationships/>")
    return buffer.getvalue()


def build_pdf(pages: list[list[str]]) -> bytes:
    """Minimal PDF with one Helvetica text line per entry, top to bottom."""
    page_count = len(pages)
    font_id = 3 + 2 * page_count
    kids = " ".join(f"{3 + 2 * i} 0 R" for i in range(page_count))

    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        f"<< /Type /Pages /Kids [{kids}] /Count {page_count} >>".encode(),
    ]
    for i, lines in enumerate(pages):
        ops = ["BT", "/F1 12 Tf", "72 720 Td"]
        for n, line in enumerate(lines):
            if n:
                ops.append("0 -30 Td")
            ops.append(f"({line}) Tj")
        ops.append("ET")
        stream = "\n".join(ops).encode("latin-1")
        objects.append(
            (
                "<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
                f"/Resources << /Font << /F1 {font_id} 0 R >> >> /Contents {4 + 2 * i} 0 R >>"
            ).encode()
        )
        objects.append(
            b"<< /Length " + str(len(stream)).encode() + b" >>\nstream\n" + stream + b"\nendstream"
        )
    objects.append(b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>")

    out = bytearray(b"%PDF-1.4\n")
    offsets = []
    for number, body in enumerate(objects, start=1):
        offsets.append(len(out))
        out += f"{number} 0 obj\n".encode() + body + b"\nendobj\n"
    xref_at = len(out)
    out += f"xref\n0 {len(objects) + 1}\n".encode()
    out += b"0000000000 65535 f \n"
    for offset in offsets:
        out += f"{offset:010d} 00000 n \n".encode()
    out += f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref_at}\n%%EOF\n".encode()
    return bytes(out)


def sse_body(tokens: list[str], *, done: bool = True) -> bytes:
    lines = []
    for token in tokens:
        chunk = {"choices": [{"index": 0, "delta": {"content": token}}]}
        lines.append(f"data: {json.dumps(chunk)}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


class RecordingLLM:
    """A ChatCompletionClient over httpx.MockTransport that records payloads."""

    def __init__(self, tokens: list[str] | None = None, *, status_code: int = 200) -> None:
        self.tokens = tokens if tokens is not None else ["Hello", " there"]
        self.status_code = status_code
        self.payloads: list[dict] = []
        transport = httpx.MockTransport(self._handle)
        self.client = ChatCompletionClient(
            base_url="https://llm.test/v1",
            api_key="test-key",
            http_client=httpx.AsyncClient(base_url="https://llm.test/v1", transport=transport),
        )

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.payloads.append(json.loads(request.content))
        if self.status_code >= 300:
            return httpx.Response(self.status_code, json={"error": {"message": "boom"}})
        return httpx.Response(
            200,
            content=sse_body(self.tokens),
            headers={"content-type": "text/event-stream"},
        )

    @property
    def last_system_prompt(self) -> str:
        return self.payloads[-1]["messages"][0]["content"]
