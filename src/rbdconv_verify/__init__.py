"""rbdconv verify - structural checks and record index for export-diff containers."""
from .logic import verify_container
from .scanner import ContainerError, ContainerRecord, ContainerScanner, open_container

__all__ = ["ContainerError", "ContainerRecord", "ContainerScanner", "open_container", "verify_container"]
