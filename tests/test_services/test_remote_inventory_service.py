"""Tests for the remote inventory client."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest

from archiver.config import Settings
from archiver.exceptions import RemoteInventoryError
from archiver.services.remote_inventory_service import RemoteInventoryClient
from archiver.transport.http_client import ArchiveTransport
from tests.conftest import Handler, json_response, make_remote

ClientFactory = Callable[[Handler], RemoteInventoryClient]

_LISTING = [
    {
        "_id": 101,
        "name": "dataset.raw",
        "subdir": "",
        "hashsum": "a" * 40,
        "hashtype": "sha1",
        "size": 10,
        "created": "2022-01-01T00:00:00",
        "transaction_id": 5,
    },
    {
        "_id": 102,
        "name": "plot.png",
        "subdir": "QC",
        "hashsum": "b" * 40,
        "hashtype": "sha1",
        "size": 3,
        "created": "2022-01-01T00:00:00",
        "transaction_id": None,
    },
]


@pytest.fixture
def client(
    make_transport: Callable[[Handler], ArchiveTransport], test_settings: Settings
) -> ClientFactory:
    def _make(handler: Handler) -> RemoteInventoryClient:
        return RemoteInventoryClient(make_transport(handler), test_settings)

    return _make


class TestFilesForKeyValue:
    def test_requests_keyvalue_url(self, client: ClientFactory) -> None:
        seen: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return json_response(_LISTING)

        versions = client(handler).files_for_keyvalue("omics.dms.dataset_id", 1234)

        assert seen == [
            "https://metadata.test/fileinfo/files_for_keyvalue/omics.dms.dataset_id/1234"
        ]
        assert [v.file_id for v in versions] == [101, 102]
        assert versions[1].relative_path == "QC/plot.png"

    def test_empty_body_is_critical(self, client: ClientFactory) -> None:
        with pytest.raises(RemoteInventoryError, match="No results"):
            client(lambda request: httpx.Response(200, text="")).files_for_keyvalue("k", "v")

    def test_unparseable_body_is_critical(
        self, client: ClientFactory
    ) -> None:
        with pytest.raises(RemoteInventoryError, match="Unable to parse"):
            client(lambda request: httpx.Response(200, text="<html>")).files_for_keyvalue("k", "v")

    def test_http_error_is_critical(self, client: ClientFactory) -> None:
        with pytest.raises(RemoteInventoryError, match="Error retrieving"):
            client(lambda request: httpx.Response(500, text="boom")).files_for_keyvalue("k", "v")

    def test_empty_list_is_valid(self, client: ClientFactory) -> None:
        assert client(lambda request: json_response([])).files_for_keyvalue("k", "v") == []


class TestGroupVersions:
    def test_groups_by_relative_path(self, test_settings: Settings) -> None:
        remote = RemoteInventoryClient(ArchiveTransport(test_settings), test_settings)
        grouped = remote.group_versions(
            [
                make_remote("", "a.raw", "1" * 40, file_id=1),
                make_remote("", "a.raw", "2" * 40, file_id=2),
                make_remote("QC", "b.png", "3" * 40, file_id=3),
            ]
        )
        assert sorted(grouped) == ["QC/b.png", "a.raw"]
        assert [v.file_id for v in grouped["a.raw"]] == [1, 2]

    def test_duplicate_hash_skipped(self, test_settings: Settings) -> None:
        remote = RemoteInventoryClient(ArchiveTransport(test_settings), test_settings)
        grouped = remote.group_versions(
            [
                make_remote("", "a.raw", "1" * 40, file_id=1),
                make_remote("", "a.raw", "1" * 40, file_id=2),
            ]
        )
        assert [v.file_id for v in grouped["a.raw"]] == [1]

    def test_corrupt_window_versions_excluded_but_path_kept(self, test_settings: Settings) -> None:
        remote = RemoteInventoryClient(ArchiveTransport(test_settings), test_settings)
        grouped = remote.group_versions(
            [make_remote("", "a.raw", "1" * 40, created="2023-11-15T12:00:00")]
        )
        assert grouped == {"a.raw": []}

    def test_subdir_filter(self, test_settings: Settings) -> None:
        remote = RemoteInventoryClient(ArchiveTransport(test_settings), test_settings)
        grouped = remote.group_versions(
            [make_remote("", "a.raw", "1" * 40), make_remote("QC", "b.png", "2" * 40)],
            subdir_filter="qc/",
        )
        assert list(grouped) == ["QC/b.png"]


class TestDatasetFiles:
    def test_dataset_files(self, client: ClientFactory) -> None:
        grouped = client(lambda request: json_response(_LISTING)).dataset_files(1234)
        assert set(grouped) == {"dataset.raw", "QC/plot.png"}

    def test_data_package_files_uses_package_key(
        self, client: ClientFactory
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert "omics.dms.datapackage_id/77" in str(request.url)
            return json_response(_LISTING)

        assert len(client(handler).data_package_files(77)) == 2


class TestFileExists:
    def test_found(self, client: ClientFactory) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["hashsum"] == "a" * 40
            return json_response(_LISTING[:1])

        assert client(handler).file_exists("a" * 40)

    def test_not_found_on_error(self, client: ClientFactory) -> None:
        assert not client(lambda request: httpx.Response(404, text="nope")).file_exists("a" * 40)
