"""
Unit tests for the row extractor
"""

import pytest
from unittest.mock import AsyncMock
from core.exceptions import AuthenticationError, SequenceError, TransientClientError
from engine.extractor import RowExtractor


async def collect(extractor):
    return [row async for row in extractor]


class TestRowExtractor:
    """Test paging, keys and filtering"""

    @pytest.mark.asyncio
    async def test_pages_through_all_rows(self, client_class, rows_factory):
        client = client_class(rows=rows_factory(120))
        totals = []

        async def on_total(total):
            totals.append(total)

        extractor = RowExtractor(client, "src", "Contact", page_size=50, on_total=on_total)
        rows = await collect(extractor)

        assert len(rows) == 120
        assert client.page_calls == 3
        assert totals == [120]
        # Positional keys without a key field
        assert [r.key for r in rows[:3]] == ["0", "1", "2"]

    @pytest.mark.asyncio
    async def test_total_unknown_when_not_reported(self, client_class, rows_factory):
        client = client_class(rows=rows_factory(10), report_total=False)
        on_total = AsyncMock()

        await collect(RowExtractor(client, "src", "Contact", page_size=5, on_total=on_total))

        on_total.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_natural_keys(self, client_class, rows_factory):
        client = client_class(rows=rows_factory(3))

        rows = await collect(RowExtractor(client, "src", "Contact", key_field="Id"))

        assert [r.key for r in rows] == ["0", "1", "2"]
        assert rows[1].data["Name"] == "Row 1"

    @pytest.mark.asyncio
    async def test_missing_key_value_flags_row(self, client_class):
        client = client_class(rows=[{"Id": 1}, {"Name": "no key"}])

        rows = await collect(RowExtractor(client, "src", "Contact", key_field="Id"))

        assert rows[0].error is None
        assert rows[1].key == "#1"
        assert "Id" in rows[1].error

    @pytest.mark.asyncio
    async def test_duplicate_natural_key_keyed_by_position(self, client_class):
        client = client_class(rows=[{"Id": 1}, {"Id": 1}, {"Id": 2}])

        rows = await collect(RowExtractor(client, "src", "Contact", key_field="Id"))

        assert [r.key for r in rows] == ["1", "#1", "2"]
        assert rows[0].error is None
        assert "Duplicate key value" in rows[1].error
        assert rows[1].data == {"Id": 1}

    @pytest.mark.asyncio
    async def test_duplicate_row_matched_by_retry_filter(self, client_class):
        client = client_class(rows=[{"Id": 1}, {"Id": 2}, {"Id": 1}])

        extractor = RowExtractor(client, "src", "Contact", key_field="Id", key_filter={"#2"})
        rows = await collect(extractor)

        assert [r.key for r in rows] == ["#2"]
        assert rows[0].error is not None
        assert extractor.unmatched_keys == set()

    @pytest.mark.asyncio
    async def test_key_filter_natural_keys(self, client_class, rows_factory):
        client = client_class(rows=rows_factory(100))

        extractor = RowExtractor(
            client, "src", "Contact", key_field="Id", key_filter={"5", "77"}, page_size=20
        )
        rows = await collect(extractor)

        assert sorted(r.key for r in rows) == ["5", "77"]
        assert client.key_filters[0].field_name == "Id"
        assert client.key_filters[0].keys == {"5", "77"}
        # Stops once every filtered key was seen
        assert client.page_calls == 4

    @pytest.mark.asyncio
    async def test_key_filter_positional_keys(self, client_class, rows_factory):
        client = client_class(rows=rows_factory(30))

        rows = await collect(RowExtractor(client, "src", "Contact", key_filter={"3", "29"}, page_size=10))

        assert [r.key for r in rows] == ["3", "29"]
        assert rows[1].data["Id"] == 29
        assert client.key_filters[0] is None

    @pytest.mark.asyncio
    async def test_unmatched_filter_keys_reported(self, client_class, rows_factory):
        client = client_class(rows=rows_factory(5))
        extractor = RowExtractor(client, "src", "Contact", key_field="Id", key_filter={"1", "99"})

        rows = await collect(extractor)

        assert [r.key for r in rows] == ["1"]
        assert extractor.unmatched_keys == {"99"}

    @pytest.mark.asyncio
    async def test_sequence_cannot_restart(self, client_class, rows_factory):
        extractor = RowExtractor(client_class(rows=rows_factory(2)), "src", "Contact")
        await collect(extractor)

        with pytest.raises(RuntimeError):
            await collect(extractor)

    @pytest.mark.asyncio
    async def test_should_stop_prevents_next_page(self, client_class, rows_factory):
        client = client_class(rows=rows_factory(100))
        seen = []
        extractor = RowExtractor(
            client, "src", "Contact", page_size=10, should_stop=lambda: len(seen) >= 10
        )

        async for row in extractor:
            seen.append(row)

        assert len(seen) == 10
        assert client.page_calls == 1


class TestPageRetry:
    """Page-level failures"""

    @pytest.mark.asyncio
    async def test_transient_page_error_retried(self, client_class, rows_factory):
        client = client_class(rows=rows_factory(5))
        client.page_errors = [TransientClientError("Server error 503", status_code=503)]
        sleep = AsyncMock()

        rows = await collect(RowExtractor(client, "src", "Contact", retry_delay=1.0, sleep=sleep))

        assert len(rows) == 5
        assert client.page_calls == 2
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_retries_exhausted_raises_sequence_error(self, client_class, rows_factory):
        client = client_class(rows=rows_factory(5))
        client.page_errors = [TransientClientError("Network error") for _ in range(3)]

        extractor = RowExtractor(client, "src", "Contact", max_attempts=3, sleep=AsyncMock())

        with pytest.raises(SequenceError) as exc_info:
            await collect(extractor)

        assert exc_info.value.context["attempts"] == 3
        assert exc_info.value.context["page"] == 1

    @pytest.mark.asyncio
    async def test_authentication_error_not_retried(self, client_class, rows_factory):
        client = client_class(rows=rows_factory(5))
        client.page_errors = [AuthenticationError("Authentication failed", status_code=401)]

        with pytest.raises(SequenceError):
            await collect(RowExtractor(client, "src", "Contact", sleep=AsyncMock()))

        assert client.page_calls == 1
