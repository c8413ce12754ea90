"""Library catalog and documentation loading for prompt assembly."""

import asyncio
import json
import logging
from pathlib import Path

import httpx
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

LLMS_DIR = Path(__file__).parent / "llms"
DEFAULT_FALLBACK_URL = "https://esm.sh/use-vibes/prompt-catalog/llms"

JSON_FILES = (
    "callai.json",
    "d3.json",
    "fireproof.json",
    "image-gen.json",
    "three-js.json",
    "web-audio.json",
)

TEXT_FILES = (
    "callai.txt",
    "fireproof.txt",
    "image-gen.txt",
    "web-audio.txt",
    "d3.md",
    "three-js.md",
)

# Used when neither the model nor the history selects anything
DEFAULT_DEPENDENCIES = ("fireproof", "callai")


class LlmCatalogEntry(BaseModel):
    """A library the generated app may import, with its documentation."""

    name: str = Field(description="Catalog name, e.g. 'fireproof'")
    label: str = Field(description="Human label used in docs tags")
    module: str = Field(default="", description="Package the docs describe")
    description: str = Field(default="")
    import_module: str = Field(default="", alias="importModule")
    import_name: str = Field(default="", alias="importName")
    import_type: str = Field(default="named", alias="importType")
    llms_txt_url: str | None = Field(default=None, alias="llmsTxtUrl")

    model_config = {"populate_by_name": True}


class DocsLoader:
    """
    Load catalog entries and documentation text.

    Files are read from the packaged llms directory first and fetched from
    the fallback URL when missing locally. Each file set is loaded once per
    loader; files that fail to load or parse are logged and skipped.
    """

    def __init__(
        self,
        local_dir: Path | str | None = LLMS_DIR,
        fallback_url: str | None = DEFAULT_FALLBACK_URL,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the loader.

        Args:
            local_dir: Directory holding the catalog files, or None to skip it.
            fallback_url: Base URL to fetch missing files from, or None.
            client: Optional HTTP client for fallback fetches.
        """
        self.local_dir = Path(local_dir) if local_dir else None
        self.fallback_url = fallback_url
        self._client = client
        self._json_docs: dict[str, LlmCatalogEntry] | None = None
        self._txt_docs: dict[str, str] | None = None
        self._lock = asyncio.Lock()

    async def _fetch(self, filename: str) -> str | None:
        url = f"{self.fallback_url.rstrip('/')}/{filename}"
        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(10.0)) as client:
                    response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to load asset {filename} from {url}: {e}")
            return None
        return response.text

    async def load_asset(self, filename: str) -> str | None:
        """Return the contents of one catalog file, or None if unavailable."""
        if self.local_dir is not None:
            path = self.local_dir / Path(filename).name
            if path.is_file():
                return path.read_text(encoding="utf-8")
        if not self.fallback_url:
            logger.error(f"Failed to load asset {filename}: not found locally")
            return None
        return await self._fetch(Path(filename).name)

    async def json_docs(self) -> dict[str, LlmCatalogEntry]:
        """Return catalog entries keyed by file name."""
        async with self._lock:
            if self._json_docs is None:
                docs: dict[str, LlmCatalogEntry] = {}
                for filename in JSON_FILES:
                    raw = await self.load_asset(filename)
                    if raw is None:
                        continue
                    try:
                        docs[filename] = LlmCatalogEntry.model_validate(json.loads(raw))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.error(f"Failed to parse JSON from asset {filename}: {e}")
                self._json_docs = docs
        return self._json_docs

    async def txt_docs(self) -> dict[str, str]:
        """Return documentation text keyed by file name."""
        async with self._lock:
            if self._txt_docs is None:
                docs: dict[str, str] = {}
                for filename in TEXT_FILES:
                    text = await self.load_asset(filename)
                    if text is not None:
                        docs[filename] = text
                self._txt_docs = docs
        return self._txt_docs

    async def get_llm_catalog(self) -> list[LlmCatalogEntry]:
        return list((await self.json_docs()).values())

    async def get_llm_catalog_names(self) -> set[str]:
        return {entry.name for entry in await self.get_llm_catalog()}

    async def get_texts(self, name: str) -> str | None:
        """
        Return documentation text for a catalog name.

        An exact file-name match wins; otherwise the first file whose name
        starts with the given name is used, so "fireproof" finds "fireproof.txt".
        """
        name = name.lower().strip()
        docs = await self.txt_docs()
        if name in docs:
            return docs[name]
        for key, text in docs.items():
            if key.lower().strip().startswith(name):
                return text
        return None


default_loader = DocsLoader()
