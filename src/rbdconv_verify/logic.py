import lzma
from pathlib import Path

from rbdconv_core.protocol import DEFAULT_BLOCK_SIZE
from .const import ERRORS
from .scanner import ContainerError, ContainerScanner, open_container


def _fail(errors: list, code: str, **detail) -> dict:
    errors.append({"code": code, "message": ERRORS[code], **detail})
    return {"status": "FAIL", "error_count": len(errors), "errors": errors}


def verify_container(path: Path, block_size: int = DEFAULT_BLOCK_SIZE) -> dict:
    """Check the structural invariants of an export-diff container.

    Fails closed on the first defect. Write records must be block aligned,
    strictly ordered, non-overlapping and inside the declared size.
    """
    errors = []
    path = Path(path)
    if not path.is_file():
        return _fail(errors, "E_LAYOUT_MISSING", path=str(path))

    with open_container(path) as f:
        scanner = ContainerScanner(f)
        try:
            header = scanner.read_header()
            size = header["size"]
            next_free = 0
            for rec in scanner.records():
                if rec.offset % block_size or rec.length <= 0 or rec.length % block_size:
                    return _fail(errors, "E_WRITE_ALIGN", record=rec.index, offset=rec.offset, length=rec.length)
                if rec.offset < next_free:
                    return _fail(errors, "E_WRITE_ORDER", record=rec.index, offset=rec.offset, expected_min=next_free)
                if rec.offset + rec.length > size:
                    return _fail(errors, "E_WRITE_BOUNDS", record=rec.index, offset=rec.offset,
                                 length=rec.length, size=size)
                next_free = rec.offset + rec.length
        except ContainerError as e:
            return _fail(errors, e.code, detail=e.detail)
        except (EOFError, lzma.LZMAError) as e:
            # xz stream cut short or corrupt
            return _fail(errors, "E_TRUNCATED", detail=str(e))

    stats = scanner.get_scan_stats()
    return {
        "status": "PASS",
        "error_count": 0,
        "errors": [],
        "header": dict(header),
        "records": stats["records"],
        "payload_bytes": stats["payload_bytes"],
    }
