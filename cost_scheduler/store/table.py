# =============================================================================
# COST OPTIMIZATION SCHEDULER - KEY-VALUE TABLE BACKENDS
# =============================================================================
"""
Table Backend Module

This module wraps the single-table key-value store used by the console,
the scheduler and the audit trail. Every item carries a ``pk``/``sk`` pair
and up to three generic secondary indexes (``GSI1``..``GSI3``) whose keys
are stored on the item as ``gsiNpk``/``gsiNsk``.

Supported Backends:
    - DynamoDB: boto3 table resource (production)
    - Memory: in-process dictionary (local development, tests)

Usage:
    table = create_table({"backend": "dynamodb", "region": "ap-south-1"}, "app-table")
    await table.put_item({"pk": "ACCOUNT#1", "sk": "METADATA"}, if_not_exists=True)
    page = await table.query("TYPE#ACCOUNT", index="GSI1")
"""

from __future__ import annotations

import asyncio
import base64
import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StoreError(Exception):
    """Base exception for table store errors."""
    pass


class TableError(StoreError):
    """Raised when a backend operation fails."""
    pass


class ConditionalCheckError(StoreError):
    """Raised when a conditional write is rejected."""
    pass


class ItemNotFoundError(StoreError):
    """Raised when an update targets a missing item."""
    pass


# =============================================================================
# DATA STRUCTURES
# =============================================================================

INDEX_KEYS = {
    None: ("pk", "sk"),
    "GSI1": ("gsi1pk", "gsi1sk"),
    "GSI2": ("gsi2pk", "gsi2sk"),
    "GSI3": ("gsi3pk", "gsi3sk"),
}


@dataclass
class QueryPage:
    """One page of query results."""
    items: List[Dict[str, Any]] = field(default_factory=list)
    last_key: Optional[Dict[str, Any]] = None

    @property
    def has_more(self) -> bool:
        return self.last_key is not None


def encode_page_token(last_key: Optional[Dict[str, Any]]) -> Optional[str]:
    """Encode a pagination key as an opaque base64 token."""
    if not last_key:
        return None
    raw = json.dumps(last_key, default=str).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_page_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode a token produced by ``encode_page_token``; garbage yields None."""
    if not token:
        return None
    try:
        data = json.loads(base64.b64decode(token.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        logger.warning(f"Ignoring malformed page token: {token[:32]}")
        return None
    return data if isinstance(data, dict) else None


def _index_keys(index: Optional[str]) -> Tuple[str, str]:
    try:
        return INDEX_KEYS[index]
    except KeyError:
        raise StoreError(f"Unknown index: {index}")


# =============================================================================
# TABLE INTERFACE
# =============================================================================

class TableInterface(ABC):
    """
    Abstract interface for key-value table backends.

    All backends expose the same subset of DynamoDB semantics so the
    services above them stay backend-agnostic.
    """

    name: str = ""

    @abstractmethod
    async def get_item(self, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Fetch a single item.

        Args:
            key: Primary key (``pk`` and ``sk``)

        Returns:
            Item dictionary or None if not found
        """
        pass

    @abstractmethod
    async def put_item(self, item: Dict[str, Any], if_not_exists: bool = False) -> None:
        """
        Write an item.

        Args:
            item: Full item including ``pk``/``sk``
            if_not_exists: Reject the write when the key already exists

        Raises:
            ConditionalCheckError: If ``if_not_exists`` and the item exists
        """
        pass

    @abstractmethod
    async def update_item(
        self,
        key: Dict[str, Any],
        updates: Dict[str, Any],
        must_exist: bool = True,
    ) -> Dict[str, Any]:
        """
        Set attributes on an item and return all of its new attributes.

        Raises:
            ItemNotFoundError: If ``must_exist`` and the item is missing
        """
        pass

    @abstractmethod
    async def delete_item(self, key: Dict[str, Any]) -> None:
        """Delete an item (no error when absent)."""
        pass

    @abstractmethod
    async def query(
        self,
        partition_value: str,
        index: Optional[str] = None,
        sk_prefix: Optional[str] = None,
        sk_range: Optional[Tuple[Optional[str], str]] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
        start_key: Optional[Dict[str, Any]] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> QueryPage:
        """
        Query one partition of the base table or a secondary index.

        Args:
            partition_value: Value of the partition key
            index: None for the base table, or ``GSI1``/``GSI2``/``GSI3``
            sk_prefix: Sort key ``begins_with`` condition
            sk_range: ``(low, high)`` for ``between``; ``(None, high)`` for ``<=``
            ascending: Sort key order
            limit: Maximum items evaluated
            start_key: Key to resume after (from a previous page)
            filters: Attribute equality filters applied after the key condition

        Returns:
            QueryPage with items and the key to continue from
        """
        pass

    @abstractmethod
    async def scan(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Scan the table with optional attribute equality filters."""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Check backend health.

        Returns:
            Health status dictionary
        """
        pass


# =============================================================================
# DYNAMODB BACKEND
# =============================================================================

def to_dynamo(value: Any) -> Any:
    """Convert floats to Decimal recursively (DynamoDB rejects floats)."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: to_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_dynamo(v) for v in value]
    return value


def from_dynamo(value: Any) -> Any:
    """Convert Decimal values back to int/float recursively."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamo(v) for v in value]
    return value


class DynamoTable(TableInterface):
    """
    DynamoDB backend built on the boto3 table resource.

    Blocking boto3 calls run in the default executor so the event loop
    serving HTTP requests is not stalled.
    """

    def __init__(self, table_name: str, config: Optional[Dict[str, Any]] = None, table=None):
        config = config or {}
        self.name = table_name
        self.region = config.get("region", "ap-south-1")
        self.logger = logging.getLogger("cost_scheduler.store.dynamodb")

        if table is None:
            resource_kwargs = {"region_name": self.region}
            if config.get("endpoint_url"):
                resource_kwargs["endpoint_url"] = config["endpoint_url"]
            table = boto3.resource("dynamodb", **resource_kwargs).Table(table_name)
        self._table = table

    async def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        method = getattr(self._table, operation)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "ClientError")
            if code == "ConditionalCheckFailedException":
                raise ConditionalCheckError(str(e)) from e
            self.logger.error(f"DynamoDB {operation} failed on {self.name}: {code}")
            raise TableError(f"DynamoDB {operation} failed: {e}") from e
        except BotoCoreError as e:
            self.logger.error(f"DynamoDB {operation} failed on {self.name}: {e}")
            raise TableError(f"DynamoDB {operation} failed: {e}") from e

    @staticmethod
    def _filter_expression(filters: Optional[Dict[str, Any]]):
        expression = None
        for attr, value in (filters or {}).items():
            condition = Attr(attr).eq(to_dynamo(value))
            expression = condition if expression is None else expression & condition
        return expression

    async def get_item(self, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        response = await self._call("get_item", Key=key)
        item = response.get("Item")
        return from_dynamo(item) if item else None

    async def put_item(self, item: Dict[str, Any], if_not_exists: bool = False) -> None:
        kwargs: Dict[str, Any] = {"Item": to_dynamo(item)}
        if if_not_exists:
            kwargs["ConditionExpression"] = "attribute_not_exists(pk)"
        await self._call("put_item", **kwargs)

    async def update_item(
        self,
        key: Dict[str, Any],
        updates: Dict[str, Any],
        must_exist: bool = True,
    ) -> Dict[str, Any]:
        if not updates:
            item = await self.get_item(key)
            if item is None and must_exist:
                raise ItemNotFoundError(f"Item not found: {key}")
            return item or {}

        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        assignments: List[str] = []
        for i, (attr, value) in enumerate(updates.items()):
            names[f"#f{i}"] = attr
            values[f":v{i}"] = to_dynamo(value)
            assignments.append(f"#f{i} = :v{i}")

        kwargs: Dict[str, Any] = {
            "Key": key,
            "UpdateExpression": "SET " + ", ".join(assignments),
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
            "ReturnValues": "ALL_NEW",
        }
        if must_exist:
            kwargs["ConditionExpression"] = "attribute_exists(pk)"

        try:
            response = await self._call("update_item", **kwargs)
        except ConditionalCheckError as e:
            raise ItemNotFoundError(f"Item not found: {key}") from e
        return from_dynamo(response.get("Attributes", {}))

    async def delete_item(self, key: Dict[str, Any]) -> None:
        await self._call("delete_item", Key=key)

    async def query(
        self,
        partition_value: str,
        index: Optional[str] = None,
        sk_prefix: Optional[str] = None,
        sk_range: Optional[Tuple[Optional[str], str]] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
        start_key: Optional[Dict[str, Any]] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> QueryPage:
        pk_attr, sk_attr = _index_keys(index)

        condition = Key(pk_attr).eq(partition_value)
        if sk_prefix is not None:
            condition = condition & Key(sk_attr).begins_with(sk_prefix)
        elif sk_range is not None:
            low, high = sk_range
            if low is not None:
                condition = condition & Key(sk_attr).between(low, high)
            else:
                condition = condition & Key(sk_attr).lte(high)

        kwargs: Dict[str, Any] = {
            "KeyConditionExpression": condition,
            "ScanIndexForward": ascending,
        }
        if index:
            kwargs["IndexName"] = index
        if limit:
            kwargs["Limit"] = limit
        if start_key:
            kwargs["ExclusiveStartKey"] = start_key
        filter_expression = self._filter_expression(filters)
        if filter_expression is not None:
            kwargs["FilterExpression"] = filter_expression

        response = await self._call("query", **kwargs)
        return QueryPage(
            items=[from_dynamo(i) for i in response.get("Items", [])],
            last_key=from_dynamo(response.get("LastEvaluatedKey")),
        )

    async def scan(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {}
        filter_expression = self._filter_expression(filters)
        if filter_expression is not None:
            kwargs["FilterExpression"] = filter_expression
        if limit:
            kwargs["Limit"] = limit

        items: List[Dict[str, Any]] = []
        while True:
            response = await self._call("scan", **kwargs)
            items.extend(from_dynamo(i) for i in response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key or (limit and len(items) >= limit):
                break
            kwargs["ExclusiveStartKey"] = last_key
        return items[:limit] if limit else items

    async def health_check(self) -> Dict[str, Any]:
        """Check DynamoDB reachability with a one-item scan."""
        try:
            await self._call("scan", Limit=1)
            return {
                "healthy": True,
                "backend": "dynamodb",
                "table": self.name,
                "region": self.region,
            }
        except StoreError as e:
            return {
                "healthy": False,
                "backend": "dynamodb",
                "table": self.name,
                "error": str(e),
            }


# =============================================================================
# MEMORY BACKEND
# =============================================================================

class MemoryTable(TableInterface):
    """
    In-process table with the same key and index semantics as DynamoDB.

    Suitable for:
    - Local development without AWS credentials
    - Unit and API tests
    """

    def __init__(self, table_name: str = "memory"):
        self.name = table_name
        self.logger = logging.getLogger("cost_scheduler.store.memory")
        self._items: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _key(key: Dict[str, Any]) -> Tuple[str, str]:
        return (str(key.get("pk")), str(key.get("sk")))

    @staticmethod
    def _matches(item: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
        return all(item.get(attr) == value for attr, value in (filters or {}).items())

    async def get_item(self, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get(self._key(key))
            return copy.deepcopy(item) if item is not None else None

    async def put_item(self, item: Dict[str, Any], if_not_exists: bool = False) -> None:
        with self._lock:
            key = self._key(item)
            if if_not_exists and key in self._items:
                raise ConditionalCheckError(f"Item already exists: {key}")
            self._items[key] = copy.deepcopy(item)

    async def update_item(
        self,
        key: Dict[str, Any],
        updates: Dict[str, Any],
        must_exist: bool = True,
    ) -> Dict[str, Any]:
        with self._lock:
            k = self._key(key)
            if k not in self._items:
                if must_exist:
                    raise ItemNotFoundError(f"Item not found: {key}")
                self._items[k] = {"pk": k[0], "sk": k[1]}
            self._items[k].update(copy.deepcopy(updates))
            return copy.deepcopy(self._items[k])

    async def delete_item(self, key: Dict[str, Any]) -> None:
        with self._lock:
            self._items.pop(self._key(key), None)

    async def query(
        self,
        partition_value: str,
        index: Optional[str] = None,
        sk_prefix: Optional[str] = None,
        sk_range: Optional[Tuple[Optional[str], str]] = None,
        ascending: bool = True,
        limit: Optional[int] = None,
        start_key: Optional[Dict[str, Any]] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> QueryPage:
        pk_attr, sk_attr = _index_keys(index)

        with self._lock:
            candidates = [
                item for item in self._items.values()
                if item.get(pk_attr) == partition_value and sk_attr in item
            ]

        def in_range(item: Dict[str, Any]) -> bool:
            sk = str(item[sk_attr])
            if sk_prefix is not None:
                return sk.startswith(sk_prefix)
            if sk_range is not None:
                low, high = sk_range
                return (low is None or low <= sk) and sk <= high
            return True

        candidates = [i for i in candidates if in_range(i)]
        candidates.sort(
            key=lambda i: (str(i[sk_attr]), i["pk"], i["sk"]),
            reverse=not ascending,
        )

        if start_key:
            position = 0
            for n, item in enumerate(candidates):
                if item["pk"] == start_key.get("pk") and item["sk"] == start_key.get("sk"):
                    position = n + 1
                    break
            candidates = candidates[position:]

        last_key = None
        if limit and len(candidates) > limit:
            candidates = candidates[:limit]
            tail = candidates[-1]
            last_key = {"pk": tail["pk"], "sk": tail["sk"]}
            if index:
                last_key[pk_attr] = tail[pk_attr]
                last_key[sk_attr] = tail[sk_attr]

        items = [copy.deepcopy(i) for i in candidates if self._matches(i, filters)]
        return QueryPage(items=items, last_key=last_key)

    async def scan(
        self,
        filters: Optional[Dict[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            items = [copy.deepcopy(i) for i in self._items.values() if self._matches(i, filters)]
        return items[:limit] if limit else items

    async def health_check(self) -> Dict[str, Any]:
        with self._lock:
            count = len(self._items)
        return {
            "healthy": True,
            "backend": "memory",
            "table": self.name,
            "item_count": count,
        }


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def create_table(config: Dict[str, Any], table_name: str) -> TableInterface:
    """
    Create a table backend from configuration.

    Args:
        config: ``store`` configuration section (backend, region, endpoint_url)
        table_name: Physical table name

    Returns:
        Table backend instance
    """
    backend = config.get("backend", "dynamodb")

    if backend == "dynamodb":
        table = DynamoTable(table_name, config)
    elif backend == "memory":
        table = MemoryTable(table_name)
    else:
        raise ValueError(f"Unknown table backend: {backend}")

    logger.info(f"Initialized {backend} table backend for {table_name}")
    return table


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Interface and backends
    "TableInterface",
    "DynamoTable",
    "MemoryTable",
    "create_table",
    # Data structures
    "QueryPage",
    "INDEX_KEYS",
    "encode_page_token",
    "decode_page_token",
    "to_dynamo",
    "from_dynamo",
    # Exceptions
    "StoreError",
    "TableError",
    "ConditionalCheckError",
    "ItemNotFoundError",
]
