"""Tests for the writer-to-request-body pipe."""

from __future__ import annotations

import threading

import pytest

from archiver.exceptions import UploadCancelledError
from archiver.transport.streaming import BodyPipe, start_writer


class TestBodyPipe:
    def test_chunks_arrive_in_order(self) -> None:
        cancel = threading.Event()

        def write_body(pipe: BodyPipe) -> None:
            for i in range(20):
                pipe.write(bytes([i]) * 10)

        pipe, writer = start_writer(write_body, cancel)
        body = b"".join(pipe)
        writer.join(1)

        assert body == b"".join(bytes([i]) * 10 for i in range(20))
        assert pipe.bytes_written == 200

    def test_empty_writes_are_ignored(self) -> None:
        pipe = BodyPipe(threading.Event(), max_chunks=4)
        assert pipe.write(b"") == 0
        pipe.close()
        assert list(pipe) == []

    def test_writer_error_reaches_reader(self) -> None:
        def write_body(pipe: BodyPipe) -> None:
            pipe.write(b"head")
            raise RuntimeError("source file unreadable")

        pipe, _ = start_writer(write_body, threading.Event())
        with pytest.raises(RuntimeError, match="unreadable"):
            b"".join(pipe)

    def test_cancel_unblocks_writer(self) -> None:
        cancel = threading.Event()
        stopped = threading.Event()

        def write_body(pipe: BodyPipe) -> None:
            try:
                while True:
                    pipe.write(b"x" * 1024)
            finally:
                stopped.set()

        _, writer = start_writer(write_body, cancel)
        cancel.set()
        writer.join(5)

        assert stopped.is_set()
        assert not writer.is_alive()

    def test_cancel_unblocks_reader(self) -> None:
        cancel = threading.Event()
        pipe = BodyPipe(cancel)
        cancel.set()
        with pytest.raises(UploadCancelledError):
            list(pipe)
