"""Document store for session databases, persisted to Cloudflare R2."""

import json
import logging
import os
import uuid

import boto3
from botocore.exceptions import ClientError

from security.utils import SecurityError, is_safe_name, validate_document_id

logger = logging.getLogger(__name__)

DOCS_DIR = "docs"
FILES_DIR = "files"


class SessionStoreError(Exception):
    """Raised when store operations fail."""

    pass


class SessionStore:
    """
    Named databases of JSON documents with file attachments.

    Each database is a key prefix in the bucket:

        <prefix><database>/docs/<id>.json
        <prefix><database>/files/<id>/<name>

    R2 is S3-compatible, so we use boto3 with custom endpoint configuration.
    """

    def __init__(
        self,
        bucket_name: str | None = None,
        prefix: str = "",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        endpoint_url: str | None = None,
        client=None,
    ):
        """
        Initialize the store with bucket configuration.

        Args:
            bucket_name: Bucket name. Defaults to VIBES_BUCKET_NAME env var.
            prefix: Key prefix for all databases (e.g., "user123/").
            access_key_id: Access key. Defaults to VIBES_ACCESS_KEY_ID env var.
            secret_access_key: Secret key. Defaults to VIBES_SECRET_ACCESS_KEY env var.
            endpoint_url: Endpoint URL. Defaults to VIBES_ENDPOINT_URL env var.
            client: Preconfigured boto3 S3 client, skips credential lookup.
        """
        self.bucket_name = bucket_name or os.environ.get("VIBES_BUCKET_NAME")
        if not self.bucket_name:
            raise SessionStoreError("Bucket name not provided and VIBES_BUCKET_NAME not set")

        self.prefix = prefix.rstrip("/") + "/" if prefix else ""

        if client is not None:
            self._client = client
            return

        access_key = access_key_id or os.environ.get("VIBES_ACCESS_KEY_ID")
        secret_key = secret_access_key or os.environ.get("VIBES_SECRET_ACCESS_KEY")
        endpoint = endpoint_url or os.environ.get("VIBES_ENDPOINT_URL")

        if not all([access_key, secret_key, endpoint]):
            raise SessionStoreError(
                "Storage credentials not fully configured. "
                "Set VIBES_ACCESS_KEY_ID, VIBES_SECRET_ACCESS_KEY, and VIBES_ENDPOINT_URL"
            )

        self._client = boto3.client(
            "s3",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            endpoint_url=endpoint,
        )

    def _database_prefix(self, database: str) -> str:
        if not is_safe_name(database):
            raise SessionStoreError(f"Invalid database name: '{database}'")
        return f"{self.prefix}{database}/"

    def _doc_key(self, database: str, doc_id: str) -> str:
        try:
            validate_document_id(doc_id)
        except SecurityError as e:
            raise SessionStoreError(str(e)) from e
        return f"{self._database_prefix(database)}{DOCS_DIR}/{doc_id}.json"

    def _file_key(self, database: str, doc_id: str, name: str) -> str:
        if not is_safe_name(name):
            raise SessionStoreError(f"Invalid file name: '{name}'")
        try:
            validate_document_id(doc_id)
        except SecurityError as e:
            raise SessionStoreError(str(e)) from e
        return f"{self._database_prefix(database)}{FILES_DIR}/{doc_id}/{name}"

    def _list_keys(self, prefix: str) -> list[str]:
        keys = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get("Contents", []):
                    keys.append(obj["Key"])
        except ClientError as e:
            raise SessionStoreError(f"Failed to list objects under {prefix}: {e}") from e
        return keys

    def put(self, database: str, doc: dict) -> str:
        """
        Write a document, generating an ``_id`` when it has none.

        Args:
            database: Database name.
            doc: JSON-serializable document.

        Returns:
            The document id.

        Raises:
            SessionStoreError: If the write fails.
        """
        doc = dict(doc)
        doc_id = doc.get("_id") or uuid.uuid4().hex
        doc["_id"] = doc_id
        key = self._doc_key(database, doc_id)

        try:
            self._client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=json.dumps(doc).encode("utf-8"),
                ContentType="application/json",
            )
        except ClientError as e:
            raise SessionStoreError(f"Failed to write {key}: {e}") from e

        logger.debug(f"Stored {database}/{doc_id}")
        return doc_id

    def get(self, database: str, doc_id: str) -> dict | None:
        """
        Read a document.

        Returns:
            The document, or None if it does not exist.

        Raises:
            SessionStoreError: If the read fails for any other reason.
        """
        key = self._doc_key(database, doc_id)
        try:
            response = self._client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise SessionStoreError(f"Failed to read {key}: {e}") from e
        return json.loads(response["Body"].read())

    def all_docs(self, database: str) -> list[dict]:
        """Return every document in a database, ordered by key."""
        docs_prefix = f"{self._database_prefix(database)}{DOCS_DIR}/"
        docs = []
        for key in sorted(self._list_keys(docs_prefix)):
            if not key.endswith(".json"):
                continue
            try:
                response = self._client.get_object(Bucket=self.bucket_name, Key=key)
            except ClientError as e:
                raise SessionStoreError(f"Failed to read {key}: {e}") from e
            docs.append(json.loads(response["Body"].read()))
        return docs

    def query(self, database: str, field: str, value) -> list[dict]:
        """Return documents whose ``field`` equals ``value``."""
        return [doc for doc in self.all_docs(database) if doc.get(field) == value]

    def delete(self, database: str, doc_id: str) -> None:
        """
        Delete a document and its attachments.

        Raises:
            SessionStoreError: If deletion fails.
        """
        keys = [self._doc_key(database, doc_id)]
        keys += self._list_keys(f"{self._database_prefix(database)}{FILES_DIR}/{doc_id}/")
        self._delete_keys(keys)

    def put_file(
        self,
        database: str,
        doc_id: str,
        name: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> str:
        """
        Attach a file to a document.

        Returns:
            The storage key of the file.

        Raises:
            SessionStoreError: If the upload fails.
        """
        key = self._file_key(database, doc_id, name)
        try:
            self._client.put_object(
                Bucket=self.bucket_name, Key=key, Body=data, ContentType=content_type
            )
        except ClientError as e:
            raise SessionStoreError(f"Failed to upload {key}: {e}") from e
        return key

    def get_file(self, database: str, doc_id: str, name: str) -> tuple[bytes, str] | None:
        """
        Read an attached file.

        Returns:
            Tuple of (data, content_type), or None if it does not exist.
        """
        key = self._file_key(database, doc_id, name)
        try:
            response = self._client.get_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise SessionStoreError(f"Failed to download {key}: {e}") from e
        content_type = response.get("ContentType") or "application/octet-stream"
        return response["Body"].read(), content_type

    def list_files(self, database: str, name: str | None = None) -> list[tuple[str, str]]:
        """
        List attached files without reading any documents.

        Args:
            database: Database to list.
            name: Only include files with this name.

        Returns:
            List of (doc_id, file_name) pairs.
        """
        prefix = f"{self._database_prefix(database)}{FILES_DIR}/"
        files = []
        for key in self._list_keys(prefix):
            doc_id, _, file_name = key[len(prefix) :].partition("/")
            if name is None or file_name == name:
                files.append((doc_id, file_name))
        return files

    def list_databases(self, prefix: str = "") -> list[str]:
        """
        List database names starting with ``prefix``.

        Raises:
            SessionStoreError: If listing fails.
        """
        full_prefix = self.prefix + prefix
        names = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            pages = paginator.paginate(
                Bucket=self.bucket_name, Prefix=full_prefix, Delimiter="/"
            )
            for page in pages:
                for common in page.get("CommonPrefixes", []):
                    names.append(common["Prefix"][len(self.prefix) :].rstrip("/"))
        except ClientError as e:
            raise SessionStoreError(f"Failed to list databases: {e}") from e
        return sorted(names)

    def delete_database(self, database: str) -> int:
        """
        Delete every document and file in a database.

        Returns:
            Number of objects deleted.
        """
        keys = self._list_keys(self._database_prefix(database))
        self._delete_keys(keys)
        logger.info(f"Deleted database {database} ({len(keys)} objects)")
        return len(keys)

    def _delete_keys(self, keys: list[str]) -> None:
        for key in keys:
            try:
                self._client.delete_object(Bucket=self.bucket_name, Key=key)
            except ClientError as e:
                raise SessionStoreError(f"Failed to delete {key}: {e}") from e
