"""Runtime helpers for running the infrastructure memory pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from .clients import SUPPORTED_PROVIDERS, LLMClient
from .interactions import InteractionLog
from .manager import InfraMemoryManager
from .parser import ResilientParser, RetryConfig
from .storage import OrganizationStore
from .tools import ChatResponder, CommandRouter

logger = logging.getLogger(__name__)


@dataclass
class InfraRuntime:
    """Wires clients, store, parser and router from plain settings."""

    store_dir: str = "data/vector-store"
    llm_url: str = "http://localhost:11434/v1"
    llm_model: str = "llama3-groq-tool-use"
    llm_provider: str = "ollama"
    llm_temperature: float = 0.1
    embed_url: str = "http://localhost:11434/v1"
    embed_model: str = "llama3.2:latest"
    embed_provider: str = "ollama"
    api_key_env: Optional[str] = None
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    interaction_log_size: int = 200

    def __post_init__(self) -> None:
        store_path = Path(self.store_dir).expanduser()
        store_path.mkdir(parents=True, exist_ok=True)

        self.llm_client = LLMClient(
            base_url=self.llm_url,
            model=self.llm_model,
            provider=self.llm_provider,
            api_key_env=self.api_key_env,
            temperature=self.llm_temperature,
        )
        self.embedding_client = LLMClient(
            base_url=self.embed_url,
            model=self.embed_model,
            provider=self.embed_provider,
            api_key_env=self.api_key_env,
            default_extra_body={},
        )
        self.interactions = InteractionLog(self.interaction_log_size)
        self.store = OrganizationStore(store_path, self.embedding_client)
        self.parser = ResilientParser(
            llm_client=self.llm_client,
            retry=RetryConfig(
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                max_delay=self.max_delay,
                backoff_multiplier=self.backoff_multiplier,
            ),
            interactions=self.interactions,
        )
        self.router = CommandRouter(
            self.store,
            chat=ChatResponder(self.llm_client, self.interactions),
            interactions=self.interactions,
        )
        self.manager = InfraMemoryManager(store=self.store, parser=self.parser, router=self.router)

    async def run(self, commands: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        await self.manager.initialize()
        results: List[Dict[str, Any]] = []
        for entry in commands:
            results.append(
                await self.manager.process_command(str(entry["command"]), context=entry.get("context"))
            )
        return results

    async def close(self) -> None:
        await self.llm_client.close()
        await self.embedding_client.close()


def _iter_commands(stream: Iterable[str]) -> Iterator[Mapping[str, Any]]:
    """Yield one command per line: plain text, or a JSON object with ``command``."""

    for raw_line in stream:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if not line.startswith("{"):
            yield {"command": line}
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as exc:  # pragma: no cover - CLI guard
            logger.error("Skipping malformed JSON line: %s", line)
            raise SystemExit(1) from exc
        if not isinstance(entry, Mapping) or not entry.get("command"):
            logger.error("Each JSON line must include a 'command' field: %s", line)
            raise SystemExit(1)
        yield entry


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run infrastructure commands against the memory store")
    parser.add_argument("--store-dir", default="data/vector-store", help="Directory holding the vector index")
    parser.add_argument("--llm-url", default="http://localhost:11434/v1", help="Base URL of the LLM server")
    parser.add_argument("--llm-model", default="llama3-groq-tool-use", help="LLM model used for parsing and chat")
    parser.add_argument(
        "--llm-provider",
        choices=SUPPORTED_PROVIDERS,
        default="ollama",
        help="LLM provider type",
    )
    parser.add_argument("--embed-url", default="http://localhost:11434/v1", help="Base URL of the embedding server")
    parser.add_argument(
        "--embed-model",
        default="llama3.2:latest",
        help="Embedding model name exposed by the server",
    )
    parser.add_argument(
        "--embed-provider",
        choices=SUPPORTED_PROVIDERS,
        default="ollama",
        help="Embedding provider type",
    )
    parser.add_argument("--api-key-env", help="Environment variable holding the API key")
    parser.add_argument("--max-attempts", type=int, default=3, help="Parse attempts per command")
    parser.add_argument(
        "--input",
        type=Path,
        help="File with one command per line (plain text or JSONL). Defaults to standard input.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging to trace prompt/response payloads.",
    )

    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    runtime = InfraRuntime(
        store_dir=str(args.store_dir),
        llm_url=args.llm_url,
        llm_model=args.llm_model,
        llm_provider=args.llm_provider,
        embed_url=args.embed_url,
        embed_model=args.embed_model,
        embed_provider=args.embed_provider,
        api_key_env=args.api_key_env,
        max_attempts=args.max_attempts,
    )

    async def _run_stream(stream: Iterable[str]) -> List[Dict[str, Any]]:
        try:
            return await runtime.run(_iter_commands(stream))
        finally:
            await runtime.close()

    if args.input:
        with args.input.open("r", encoding="utf-8") as fh:
            results = asyncio.run(_run_stream(fh))
    else:
        results = asyncio.run(_run_stream(sys.stdin))

    for result in results:
        print(json.dumps(result, ensure_ascii=False, indent=2))

    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
