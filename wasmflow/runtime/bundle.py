"""Composite bundle format.

A bundle is a zip archive holding ``manifest.json``, ``socket.wasm`` and one
``plug-<n>.wasm`` per plug. Entries carry a fixed timestamp and mode so the
same members and wiring always serialize to the same bytes.
"""

import io
import json
import zipfile
from typing import Any, Dict, List, Tuple

from wasmflow.utils.errors import CompositionError

BUNDLE_FORMAT = "wasmflow-composite"
BUNDLE_VERSION = 1
MANIFEST_NAME = "manifest.json"
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def write_bundle(manifest: Dict[str, Any], socket: bytes, plugs: List[bytes]) -> bytes:
    """Serialize a bundle; identical inputs always give identical bytes."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        entries = [(MANIFEST_NAME, json.dumps(manifest, sort_keys=True, indent=2).encode())]
        entries.append(("socket.wasm", socket))
        entries.extend((f"plug-{index}.wasm", data) for index, data in enumerate(plugs))
        for filename, data in entries:
            info = zipfile.ZipInfo(filename, date_time=_ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            archive.writestr(info, data)
    return buffer.getvalue()


def read_bundle(data: bytes) -> Tuple[Dict[str, Any], bytes, List[bytes]]:
    """Split a bundle into (manifest, socket bytes, plug bytes).

    Raises:
        CompositionError: If the data is not a valid bundle
    """
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            manifest = json.loads(archive.read(MANIFEST_NAME))
            if manifest.get("format") != BUNDLE_FORMAT:
                raise CompositionError("Not a WasmFlow composite bundle")
            socket = archive.read("socket.wasm")
            plugs = [archive.read(f"plug-{index}.wasm") for index in range(len(manifest["plugs"]))]
    except (zipfile.BadZipFile, KeyError, ValueError) as e:
        raise CompositionError(f"Invalid composite bundle: {e}") from e
    return manifest, socket, plugs
