"""Shared builders and fakes for the test suite."""
import io
import json
import struct
import zlib
from typing import List

from ragdesk.config import settings


def unit_vector(i: int = 0) -> List[float]:
    vec = [0.0] * settings.EMBEDDING_DIM
    vec[i % settings.EMBEDDING_DIM] = 1.0
    return vec


def fake_embed_texts(texts, config):
    return [unit_vector(i) for i in range(len(texts))]


def png_bytes(width: int = 1, height: int = 1, rgb=(255, 0, 0)) -> bytes:
    """A valid uncompressed RGB PNG."""

    def chunk(tag: bytes, data: bytes) -> bytes:
        return struct.pack(">I", len(data)) + tag + data + struct.pack(">I", zlib.crc32(tag + data) & 0xFFFFFFFF)

    row = b"\x00" + bytes(rgb) * width
    raw = row * height
    return (
        b"\x89PNG\r\n\x1a\n"
        + chunk(b"IHDR", struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0))
        + chunk(b"IDAT", zlib.compress(raw))
        + chunk(b"IEND", b"")
    )


def docx_bytes(paragraphs: List[str], images: List[bytes] = ()) -> bytes:
    from docx import Document as DocxDocument

    doc = DocxDocument()
    for p in paragraphs:
        doc.add_paragraph(p)
    for img in images:
        doc.add_picture(io.BytesIO(img))
    buf = io.BytesIO()
    doc.save(buf)
    return buf.getvalue()


def pdf_bytes(text: str) -> bytes:
    """Single-page PDF with one line of Helvetica text and a correct xref table."""
    stream = f"BT /F1 12 Tf 72 720 Td ({text}) Tj ET".encode("latin-1")
    objects = [
        b"<< /Type /Catalog /Pages 2 0 R >>",
        b"<< /Type /Pages /Kids [3 0 R] /Count 1 >>",
        b"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] "
        b"/Resources << /Font << /F1 4 0 R >> >> /Contents 5 0 R >>",
        b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica >>",
        b"<< /Length " + str(len(stream)).encode() + b" >>\nstream\n" + stream + b"\nendstream",
    ]
    out = io.BytesIO()
    out.write(b"%PDF-1.4\n")
    offsets = []
    for n, body in enumerate(objects, start=1):
        offsets.append(out.tell())
        out.write(f"{n} 0 obj\n".encode() + body + b"\nendobj\n")
    xref = out.tell()
    out.write(f"xref\n0 {len(objects) + 1}\n".encode())
    out.write(b"0000000000 65535 f \n")
    for off in offsets:
        out.write(f"{off:010d} 00000 n \n".encode())
    out.write(f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R >>\nstartxref\n{xref}\n%%EOF\n".encode())
    return out.getvalue()


class FakeStreamResponse:
    """Stands in for a streamed requests.Response."""

    def __init__(self, lines=(), status_code: int = 200, text: str = ""):
        self._lines = [l.encode("utf-8") if isinstance(l, str) else l for l in lines]
        self.status_code = status_code
        self.text = text
        self.reason = "OK" if status_code < 400 else "Error"
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def iter_lines(self):
        yield from self._lines

    def close(self):
        self.closed = True


def sse(payload) -> str:
    return f"data: {json.dumps(payload)}"


def content_delta(text: str) -> str:
    return sse({"choices": [{"index": 0, "delta": {"content": text}}]})


def tool_delta(index: int, name: str = None, arguments: str = "", call_id: str = None) -> str:
    fragment = {"index": index, "function": {"arguments": arguments}}
    if name:
        fragment["function"]["name"] = name
    if call_id:
        fragment["id"] = call_id
    return sse({"choices": [{"index": 0, "delta": {"tool_calls": [fragment]}}]})
