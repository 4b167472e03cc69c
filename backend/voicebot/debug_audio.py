"""
Diagnostic audio dumps for remote client debugging.
Stores what a client actually streamed (especially from mobile browsers) for analysis.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


class DebugAudioRecorder:
    """
    Writes each received chunk, the running concatenation, and the final
    recording under <storage_dir>/debug_audio/<client_id>/.

    Write failures are logged and ignored.
    """

    def __init__(self, storage_dir: Union[str, Path], enabled: bool = False):
        self.root = Path(storage_dir) / "debug_audio"
        self.enabled = enabled

    def client_dir(self, client_id: str) -> Path:
        return self.root / client_id

    def _write(self, path: Path, data: bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            logger.warning(f"Could not write debug audio {path}: {e}")

    def record_chunk(self, client_id: str, chunk_index: int, chunk: bytes, combined: bytes) -> None:
        if not self.enabled:
            return
        directory = self.client_dir(client_id)
        self._write(directory / f"chunk_{chunk_index:04d}.webm", chunk)
        self._write(directory / "combined.webm", combined)
        logger.debug(f"Debug audio chunk {chunk_index} saved for {client_id}")

    def record_final(self, client_id: str, audio: bytes) -> None:
        if not self.enabled:
            return
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self._write(self.client_dir(client_id) / f"final_{timestamp}.webm", audio)
