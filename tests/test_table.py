"""
Tests for the table backends.
"""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from cost_scheduler.store.table import (
    ConditionalCheckError,
    DynamoTable,
    ItemNotFoundError,
    MemoryTable,
    StoreError,
    TableError,
    create_table,
    decode_page_token,
    encode_page_token,
    from_dynamo,
    to_dynamo,
)


def client_error(code: str, operation: str = "PutItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestPageTokens:
    def test_round_trip(self):
        key = {"pk": "ACCOUNT#1", "sk": "METADATA"}
        assert decode_page_token(encode_page_token(key)) == key

    def test_empty_key_has_no_token(self):
        assert encode_page_token(None) is None
        assert encode_page_token({}) is None

    def test_garbage_token_is_ignored(self):
        assert decode_page_token("not-base64!!") is None
        assert decode_page_token(None) is None


class TestDynamoConversion:
    def test_floats_become_decimals_and_back(self):
        stored = to_dynamo({"rate": 99.5, "count": 3, "nested": [1.25]})
        restored = from_dynamo(stored)
        assert restored == {"rate": 99.5, "count": 3, "nested": [1.25]}
        assert isinstance(restored["count"], int)


class TestMemoryTable:
    async def test_put_and_get(self):
        table = MemoryTable()
        await table.put_item({"pk": "A", "sk": "1", "value": 1})
        assert await table.get_item({"pk": "A", "sk": "1"}) == {"pk": "A", "sk": "1", "value": 1}
        assert await table.get_item({"pk": "A", "sk": "2"}) is None

    async def test_returned_items_are_copies(self):
        table = MemoryTable()
        await table.put_item({"pk": "A", "sk": "1", "tags": ["x"]})
        item = await table.get_item({"pk": "A", "sk": "1"})
        item["tags"].append("y")
        assert (await table.get_item({"pk": "A", "sk": "1"}))["tags"] == ["x"]

    async def test_conditional_put_rejects_existing(self):
        table = MemoryTable()
        await table.put_item({"pk": "A", "sk": "1"}, if_not_exists=True)
        with pytest.raises(ConditionalCheckError):
            await table.put_item({"pk": "A", "sk": "1"}, if_not_exists=True)

    async def test_update_missing_item(self):
        table = MemoryTable()
        with pytest.raises(ItemNotFoundError):
            await table.update_item({"pk": "A", "sk": "1"}, {"value": 2})

        created = await table.update_item({"pk": "A", "sk": "1"}, {"value": 2}, must_exist=False)
        assert created["value"] == 2

    async def test_query_index_sorted_and_paginated(self):
        table = MemoryTable()
        for name in ("charlie", "alpha", "bravo"):
            await table.put_item({
                "pk": f"ACCOUNT#{name}", "sk": "METADATA",
                "gsi1pk": "TYPE#ACCOUNT", "gsi1sk": name,
            })

        first = await table.query("TYPE#ACCOUNT", index="GSI1", limit=2)
        assert [i["gsi1sk"] for i in first.items] == ["alpha", "bravo"]
        assert first.has_more

        second = await table.query("TYPE#ACCOUNT", index="GSI1", limit=2, start_key=first.last_key)
        assert [i["gsi1sk"] for i in second.items] == ["charlie"]
        assert not second.has_more

    async def test_query_range_descending_with_filters(self):
        table = MemoryTable()
        for ts, status in (("2024-01-01", "success"), ("2024-01-02", "error"), ("2024-01-03", "success")):
            await table.put_item({
                "pk": f"LOG#{ts}", "sk": ts, "gsi1pk": "TYPE#LOG", "gsi1sk": ts, "status": status,
            })

        page = await table.query(
            "TYPE#LOG", index="GSI1", sk_range=(None, "2024-01-02"), ascending=False
        )
        assert [i["sk"] for i in page.items] == ["2024-01-02", "2024-01-01"]

        filtered = await table.query("TYPE#LOG", index="GSI1", filters={"status": "success"})
        assert [i["sk"] for i in filtered.items] == ["2024-01-01", "2024-01-03"]

    async def test_query_sk_prefix(self):
        table = MemoryTable()
        await table.put_item({"pk": "SCHEDULE#a", "sk": "METADATA"})
        await table.put_item({"pk": "SCHEDULE#a", "sk": "EXECUTION#2024-01-01#1"})
        page = await table.query("SCHEDULE#a", sk_prefix="EXECUTION#")
        assert [i["sk"] for i in page.items] == ["EXECUTION#2024-01-01#1"]

    async def test_unknown_index(self):
        with pytest.raises(StoreError):
            await MemoryTable().query("X", index="GSI9")

    async def test_health_check(self):
        table = MemoryTable("local")
        await table.put_item({"pk": "A", "sk": "1"})
        health = await table.health_check()
        assert health["healthy"] is True
        assert health["item_count"] == 1


class TestDynamoTable:
    def make_table(self):
        resource_table = MagicMock()
        table = DynamoTable("app-table", {"region": "us-east-1"}, table=resource_table)
        return table, resource_table

    async def test_conditional_failure_is_mapped(self):
        table, resource_table = self.make_table()
        resource_table.put_item.side_effect = client_error("ConditionalCheckFailedException")

        with pytest.raises(ConditionalCheckError):
            await table.put_item({"pk": "A", "sk": "1"}, if_not_exists=True)

        kwargs = resource_table.put_item.call_args.kwargs
        assert "ConditionExpression" in kwargs

    async def test_other_client_errors_become_table_errors(self):
        table, resource_table = self.make_table()
        resource_table.get_item.side_effect = client_error("ResourceNotFoundException", "GetItem")

        with pytest.raises(TableError):
            await table.get_item({"pk": "A", "sk": "1"})

    async def test_get_item_converts_decimals(self):
        table, resource_table = self.make_table()
        from decimal import Decimal

        resource_table.get_item.return_value = {"Item": {"pk": "A", "sk": "1", "count": Decimal("2")}}
        item = await table.get_item({"pk": "A", "sk": "1"})
        assert item["count"] == 2

    async def test_health_check_reports_errors(self):
        table, resource_table = self.make_table()
        resource_table.scan.side_effect = client_error("AccessDeniedException", "Scan")
        health = await table.health_check()
        assert health["healthy"] is False
        assert "AccessDeniedException" in health["error"]


class TestCreateTable:
    def test_memory_backend(self):
        table = create_table({"backend": "memory"}, "app")
        assert isinstance(table, MemoryTable)
        assert table.name == "app"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_table({"backend": "sqlite"}, "app")
