#!/usr/bin/env python3
"""
Build Knowledge Graph Script

Loads a text or markdown file into a source chunk table, then drives the
three pipeline stages until they are idle.

Usage:
    python scripts/build_kg.py test_data/report.md
    python scripts/build_kg.py test_data/report.md --chunks 10
    python scripts/build_kg.py test_data/report.md --output ./my_kb
    python scripts/build_kg.py test_data/report.md --model gpt-4o
"""

from __future__ import annotations

import argparse
import asyncio
import re
import shutil
import time
from pathlib import Path

from dotenv import load_dotenv

from kgbuild.api.builder import KnowledgeGraphBuilder
from kgbuild.config import KGBuildConfig
from kgbuild.types import EventKind, ExtractionConfig, SubmitTaskParams

PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(PROJECT_ROOT / ".env")

NAMESPACE = "local"
DATABASE = "docs"
SOURCE_TABLE = "chunks"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build a knowledge graph from a text document"
    )
    parser.add_argument("input", type=Path, help="Path to a text or markdown file")
    parser.add_argument(
        "--chunks",
        type=int,
        default=None,
        help="Only load the first N chunks",
    )
    parser.add_argument(
        "--chunk-chars",
        type=int,
        default=2000,
        help="Approximate characters per chunk (default: 2000)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("./test_kb"),
        help="Data directory (default: ./test_kb)",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="LLM model override (default: from KGBuildConfig)",
    )
    parser.add_argument(
        "--clean",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Clean output directory before building (default: true)",
    )
    return parser.parse_args()


def split_paragraphs(text: str, chunk_chars: int) -> list[str]:
    """Group blank-line separated paragraphs into chunks of about chunk_chars."""
    chunks: list[str] = []
    current = ""
    for paragraph in re.split(r"\n\s*\n", text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if current and len(current) + len(paragraph) > chunk_chars:
            chunks.append(current)
            current = ""
        current = f"{current}\n\n{paragraph}" if current else paragraph
    if current:
        chunks.append(current)
    return chunks


async def load_source_table(builder: KnowledgeGraphBuilder, file_key: str, chunks: list[str]) -> None:
    client = builder.client
    await client.execute_in_database(NAMESPACE, DATABASE, [(
        f"CREATE TABLE IF NOT EXISTS {SOURCE_TABLE} (chunk_index INTEGER, content VARCHAR, file_key VARCHAR)",
        None,
    )])
    await client.execute_in_database(NAMESPACE, DATABASE, [
        (
            f"INSERT INTO {SOURCE_TABLE} VALUES ($chunk_index, $content, $file_key)",
            {"chunk_index": i, "content": content, "file_key": file_key},
        )
        for i, content in enumerate(chunks)
    ])


async def main() -> None:
    args = parse_args()

    if not args.input.exists():
        raise FileNotFoundError(f"Input file not found: {args.input}")
    if args.chunks is not None and args.chunks <= 0:
        raise ValueError("--chunks must be a positive integer")

    if args.clean and args.output.exists():
        shutil.rmtree(args.output)

    config = KGBuildConfig(data_dir=args.output)
    chunks = split_paragraphs(args.input.read_text(encoding="utf-8"), args.chunk_chars)
    if args.chunks is not None:
        chunks = chunks[:args.chunks]
    file_key = args.input.name

    start = time.time()
    async with KnowledgeGraphBuilder(config) as builder:
        builder.subscribe(
            EventKind.TASK_PROGRESS,
            lambda e: print(f"  [extract] {e.completed + e.failed}/{e.total}"),
        )
        builder.subscribe(
            EventKind.BUILD_PROGRESS,
            lambda e: print(f"  [build] {e.completed + e.failed}/{e.total}"),
        )
        builder.subscribe(
            EventKind.EMBEDDING_PROGRESS,
            lambda e: print(f"  [embed] {e.target_kind}: {e.remaining} remaining"),
        )

        print(f"Loading {len(chunks)} chunks of {file_key}...")
        await load_source_table(builder, file_key, chunks)
        result = await builder.submit_task(SubmitTaskParams(
            file_key=file_key,
            source_namespace=NAMESPACE,
            source_database=DATABASE,
            source_table=SOURCE_TABLE,
            config=ExtractionConfig(model=args.model),
        ))
        print(f"Submitted task {result.task_id} ({result.chunks_total} chunks)")

        await builder.run_until_idle()

        builds = await builder.query_build_status()
        embedding = await builder.embedding_status()

    total = time.time() - start
    print("\nBuild complete")
    for build in builds:
        print(f"  Build {build.id}: {build.status.value}")
        print(f"    Entities: {build.entities_upserted}")
        print(f"    Relations: {build.relations_upserted}")
        if build.error:
            print(f"    Error: {build.error}")
    for item in embedding.targets:
        print(f"  {item.target.key}: {item.embedded_entities} entities embedded")
    if embedding.last_error:
        print(f"  Embedding error: {embedding.last_error}")
    print(f"  Total script duration: {total:.2f}s")


if __name__ == "__main__":
    asyncio.run(main())
