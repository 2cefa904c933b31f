"""Property-based tests for reconciliation invariants."""

from __future__ import annotations

import string

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from archiver.models.files import RemoteFileVersion
from archiver.services.reconcile_service import reconcile
from tests.conftest import make_record, make_remote, sha1_of

PROPERTY_SETTINGS = settings(
    max_examples=200,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)

_SEGMENT = st.text(alphabet=string.ascii_lowercase + string.digits, min_size=1, max_size=8)
_NAME = st.builds(lambda stem, ext: f"{stem}.{ext}", _SEGMENT, st.sampled_from(["raw", "png"]))
_DIR = st.sampled_from(["", "QC", "QC/plots", "mzML"])
_CONTENT = st.binary(min_size=1, max_size=16)
_LOCAL = st.dictionaries(
    keys=st.tuples(_DIR, _NAME), values=_CONTENT, max_size=12
)


def _remote_from(local: dict[tuple[str, str], bytes], keep: set, change: set) -> dict:
    remote: dict[str, list[RemoteFileVersion]] = {}
    for (relative_dir, name), data in local.items():
        path = f"{relative_dir}/{name}" if relative_dir else name
        if path in keep:
            remote[path] = [make_remote(relative_dir, name, sha1_of(data))]
        elif path in change:
            remote[path] = [make_remote(relative_dir, name, sha1_of(data + b"-old"))]
    return remote


class TestReconcileProperties:
    @PROPERTY_SETTINGS
    @given(local=_LOCAL, data=st.data())
    def test_partition_is_complete(
        self, local: dict[tuple[str, str], bytes], data: st.DataObject
    ) -> None:
        records = [make_record(d, n, content) for (d, n), content in local.items()]
        paths = [r.relative_path for r in records]
        keep = set(data.draw(st.lists(st.sampled_from(paths), unique=True)) if paths else [])
        rest = [p for p in paths if p not in keep]
        change = set(data.draw(st.lists(st.sampled_from(rest), unique=True)) if rest else [])

        result = reconcile(records, _remote_from(local, keep, change), expected_remote_count=0)

        assert result.unchanged_count == len(keep)
        assert result.updated_count == len(change)
        assert result.new_count == len(records) - len(keep) - len(change)
        assert len(result.files) == result.new_count + result.updated_count
        assert result.total_bytes == sum(f.size for f in result.files)

    @PROPERTY_SETTINGS
    @given(local=_LOCAL)
    def test_upload_preserves_input_order(self, local: dict[tuple[str, str], bytes]) -> None:
        records = [make_record(d, n, content) for (d, n), content in local.items()]
        result = reconcile(records, {}, expected_remote_count=0)
        assert result.files == records

    @PROPERTY_SETTINGS
    @given(local=_LOCAL)
    def test_everything_archived_means_nothing_to_upload(
        self, local: dict[tuple[str, str], bytes]
    ) -> None:
        records = [make_record(d, n, content) for (d, n), content in local.items()]
        keep = {r.relative_path for r in records}
        result = reconcile(records, _remote_from(local, keep, set()), expected_remote_count=0)
        assert result.files == []
