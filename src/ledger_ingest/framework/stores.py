"""
Key-value stores backing the result cache.

Contract: get(key) -> Optional[str], set(key, value), delete(key). Values are
opaque strings; the cache owns their encoding. Stores may be shared between
concurrent requests and give last-writer-wins semantics, nothing stronger.

Backends:
- InMemoryStore:  process-local dict (tests, single-run CLI)
- JsonFileStore:  one JSON object on disk (repeated CLI runs)
- DynamoDBStore:  one DynamoDB item per key, chunked past the item size limit (shared deployments)
"""

import json
import logging
import os
import tempfile
from typing import Any, Optional, Protocol

import boto3

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryStore:
    """Dict-backed store. Each instance is isolated, so tests can inject one per case."""

    def __init__(self, initial: Optional[dict[str, str]] = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore:
    """
    All keys in a single JSON object file.

    An unreadable or non-object file reads as empty; the next set() rewrites it.
    Writes go through a temp file and os.replace so readers never see a partial file.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def _load(self) -> dict[str, str]:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("JsonFileStore unreadable — treating as empty | path=%s | error=%s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("JsonFileStore holds a non-object document — treating as empty | path=%s", self.path)
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _save(self, data: dict[str, str]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".ledger-store-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)


class DynamoDBStore:
    """
    DynamoDB table with partition key "key" (S) and a string attribute "value".

    Reads are strongly consistent so a get() right after set() sees the write.

    DynamoDB rejects items over 400 KB. A value too large for one item is split
    across "{key}#chunk-{n}" items and the head item stores the chunk count in
    "chunks" instead of "value". A head whose chunks are not all present reads
    as missing.
    """

    KEY_ATTRIBUTE = "key"
    VALUE_ATTRIBUTE = "value"
    CHUNKS_ATTRIBUTE = "chunks"
    MAX_INLINE_BYTES = 350_000
    CHUNK_CHARS = 80_000  # a character is at most 4 UTF-8 bytes

    def __init__(self, table_name: str, region: str) -> None:
        self._table_name = table_name
        self._region = region
        self._dynamodb = boto3.client("dynamodb", region_name=region)

    def get(self, key: str) -> Optional[str]:
        item = self._get_item(key)
        if not item:
            return None
        if self.VALUE_ATTRIBUTE in item:
            return item[self.VALUE_ATTRIBUTE].get("S")

        count = self._count(item)
        parts: list[str] = []
        for index in range(count):
            chunk = self._get_item(self._chunk_key(key, index))
            if not chunk or self.VALUE_ATTRIBUTE not in chunk:
                logger.warning("DynamoDBStore chunk missing, treating as absent | key=%s | chunk=%d", key, index)
                return None
            parts.append(chunk[self.VALUE_ATTRIBUTE].get("S", ""))
        return "".join(parts) if count else None

    def set(self, key: str, value: str) -> None:
        previous = self._stored_chunks(key)
        if len(value.encode("utf-8")) <= self.MAX_INLINE_BYTES:
            self._put(key, {self.VALUE_ATTRIBUTE: {"S": value}})
            count = 0
        else:
            chunks = [value[i : i + self.CHUNK_CHARS] for i in range(0, len(value), self.CHUNK_CHARS)]
            for index, chunk in enumerate(chunks):
                self._put(self._chunk_key(key, index), {self.VALUE_ATTRIBUTE: {"S": chunk}})
            # head last, so a reader never finds a count ahead of its chunks
            self._put(key, {self.CHUNKS_ATTRIBUTE: {"N": str(len(chunks))}})
            count = len(chunks)
            logger.debug("DynamoDBStore value chunked | key=%s | chunks=%d | chars=%d", key, count, len(value))
        self._delete_chunks(key, count, previous)

    def delete(self, key: str) -> None:
        previous = self._stored_chunks(key)
        self._dynamodb.delete_item(
            TableName=self._table_name,
            Key={self.KEY_ATTRIBUTE: {"S": key}},
        )
        self._delete_chunks(key, 0, previous)

    # ------------------------------------------------------------------
    # Item helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _chunk_key(key: str, index: int) -> str:
        return f"{key}#chunk-{index}"

    def _count(self, item: dict[str, Any]) -> int:
        try:
            return int(item.get(self.CHUNKS_ATTRIBUTE, {}).get("N", 0))
        except (TypeError, ValueError):
            return 0

    def _get_item(self, key: str, **kwargs: Any) -> Optional[dict[str, Any]]:
        response: dict[str, Any] = self._dynamodb.get_item(
            TableName=self._table_name,
            Key={self.KEY_ATTRIBUTE: {"S": key}},
            ConsistentRead=True,
            **kwargs,
        )
        return response.get("Item")

    def _stored_chunks(self, key: str) -> int:
        item = self._get_item(
            key,
            ProjectionExpression="#c",
            ExpressionAttributeNames={"#c": self.CHUNKS_ATTRIBUTE},
        )
        return self._count(item) if item else 0

    def _put(self, key: str, attributes: dict[str, Any]) -> None:
        self._dynamodb.put_item(
            TableName=self._table_name,
            Item={self.KEY_ATTRIBUTE: {"S": key}, **attributes},
        )

    def _delete_chunks(self, key: str, start: int, stop: int) -> None:
        for index in range(start, stop):
            self._dynamodb.delete_item(
                TableName=self._table_name,
                Key={self.KEY_ATTRIBUTE: {"S": self._chunk_key(key, index)}},
            )
