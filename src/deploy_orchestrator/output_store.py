from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from .errors import OutputWriteFailed
from .models import Address, AddressTable, OutputRecord
from .state_store import _atomic_write_text, _locked_file, _safe_read_json

logger = logging.getLogger(__name__)


class OutputStore:
    """Write-once persistence of a run's final address record.

    Output files are pretty-printed JSON meant for operators and for later
    incremental runs, which read them back as seed address tables.
    """

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = output_dir

    def path_for(self, output_name: str) -> Path:
        return self.output_dir / f"{output_name}.json"

    def write(self, record: OutputRecord, path: Path) -> Path:
        """Persist ``record``; an identical re-write from the same run is a no-op.

        Raises:
            OutputWriteFailed: If the file already holds a different record,
                or the filesystem refuses the write.
        """
        try:
            with _locked_file(path):
                if path.exists():
                    self._check_existing(path, record)
                    logger.info("Output %s already written by run %s", path, record.run_id)
                    return path
                _atomic_write_text(path, record.model_dump_json(indent=2))
        except OSError as exc:
            logger.error("Writing output %s failed: %s", path, exc)
            raise OutputWriteFailed(path, str(exc)) from exc

        logger.info("Wrote %d addresses to %s", len(record.addresses) + len(record.libraries), path)
        return path

    def _check_existing(self, target: Path, record: OutputRecord) -> None:
        try:
            existing = self.read(target)
        except ValueError as exc:
            raise OutputWriteFailed(target, f"existing file is not a readable output record: {exc}") from exc
        if existing.run_id != record.run_id:
            raise OutputWriteFailed(target, f"already written by run {existing.run_id}")
        if existing.addresses != record.addresses or existing.libraries != record.libraries:
            raise OutputWriteFailed(target, f"run {record.run_id} produced different addresses than the stored record")

    def read(self, path: Path) -> OutputRecord:
        """Load an output record.

        Raises:
            FileNotFoundError: If ``path`` does not exist.
            ValueError: If the file is not a valid output record.
        """
        text = _safe_read_json(path, "deployment output")
        try:
            return OutputRecord.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"deployment output at {path} failed validation: {exc}") from exc

    def read_address_table(self, path: Path) -> AddressTable:
        """Seed table from an output record or a flat ``{name: address}`` file.

        Raises:
            FileNotFoundError: If ``path`` does not exist.
            ValueError: If the file matches neither format.
        """
        text = _safe_read_json(path, "address file")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"address file at {path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValueError(f"address file at {path} must contain a JSON object")

        if "addresses" in payload and "run_id" in payload:
            try:
                return OutputRecord.model_validate(payload).address_table()
            except ValidationError as exc:
                raise ValueError(f"deployment output at {path} failed validation: {exc}") from exc

        table = AddressTable()
        for name, value in payload.items():
            if not isinstance(value, str):
                raise ValueError(f"address file at {path}: entry {name} is not an address string")
            table.seed(name, Address(value))
        return table
