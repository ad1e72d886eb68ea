import os
import codecs
import logging
from typing import Optional, Tuple

log = logging.getLogger(__name__)


def new_decoder() -> codecs.IncrementalDecoder:
    """Returns a UTF-8 decoder that holds back a character split across reads."""
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


def tail(path: str, offset: int, decoder: Optional[codecs.IncrementalDecoder] = None) -> Tuple[str, int]:
    """
    Reads whatever was appended to a file since `offset`.

    :param path: The file to read.
    :param offset: Byte offset of the first unread byte.
    :param decoder: Incremental decoder shared across calls on the same file.
        Without one, a multi-byte character cut by the end of the file is
        replaced instead of completed on the next read.
    :return: The decoded new text and the offset advanced by the raw bytes read.
        A missing file yields an empty string and the unchanged offset.
    """
    try:
        with open(path, 'rb') as f:
            f.seek(offset, os.SEEK_SET)
            data = f.read()
    except FileNotFoundError:
        return "", offset
    if decoder is None:
        return data.decode("utf-8", errors="replace"), offset + len(data)
    return decoder.decode(data), offset + len(data)


class DebugTailer:
    """Tails the worker output log for one session, never returning a byte twice."""

    def __init__(self, path: str, offset: int = 0) -> None:
        self.path = path
        self.offset = offset
        self.decoder = new_decoder()

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def read_new(self) -> str:
        text, self.offset = tail(self.path, self.offset, self.decoder)
        if text:
            log.debug(f"Read {len(text)} characters of worker output, offset now {self.offset}")
        return text
