from __future__ import annotations

import io
import zipfile
from dataclasses import dataclass


@dataclass(frozen=True)
class Archive:
    name: str
    content: bytes


def zip_document(base_name: str, xml: bytes) -> Archive:
    """Pack the signed XML as the single entry of a ZIP, SUNAT style.

    Entry: <base>.XML, archive: <base>.ZIP, no folders.
    """
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(f"{base_name}.XML", xml)
    return Archive(name=f"{base_name}.ZIP", content=buf.getvalue())


def read_single_entry(content: bytes) -> tuple[str, bytes]:
    """Return (name, bytes) of the XML entry of a receipt archive.

    Directory entries and non-XML files (SUNAT adds a ``dummy/`` folder) are
    skipped. Raises ValueError if the archive is unreadable or has no XML.
    """
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as zf:
            for info in zf.infolist():
                if info.is_dir() or not info.filename.lower().endswith(".xml"):
                    continue
                return info.filename.rsplit("/", 1)[-1], zf.read(info)
    except zipfile.BadZipFile as exc:
        raise ValueError(f"ZIP invalido: {exc}") from exc
    raise ValueError("No se encontro XML dentro del ZIP")
