#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

import aiohttp

from redirector import Config, ExistenceVerifier, JsonFileStore, ResolutionCache, load_config


def redirected_entries(cache: ResolutionCache) -> list[tuple[str, str]]:
    return sorted((original, resolved) for original, resolved in cache.items() if original != resolved)


async def probe_all(entries: list[tuple[str, str]], timeout_sec: float) -> dict[str, bool]:
    results: dict[str, bool] = {}
    async with aiohttp.ClientSession() as session:
        verifier = ExistenceVerifier(session, timeout_sec=timeout_sec)
        for _, resolved in entries:
            results[resolved] = await verifier.exists(resolved)
    return results


async def audit(config: Config, prune: bool = False) -> int:
    cache = ResolutionCache(JsonFileStore(config.cache_path), config.cache_key)
    if not Path(config.cache_path).exists():
        print(f"[NG] cache file not found: {config.cache_path}")
        print("OK: 0")
        print("NG: 1")
        return 1

    total = cache.load()
    entries = redirected_entries(cache)
    results = await probe_all(entries, config.timeout_sec)

    ok_count = ng_count = 0
    dead: list[str] = []
    for original, resolved in entries:
        if results[resolved]:
            ok_count += 1
            continue
        ng_count += 1
        dead.append(original)
        print(f"[NG] dead redirect: {original} -> {resolved}")

    print(f"Cached: {total} (redirects: {len(entries)}, pass-through: {total - len(entries)})")
    print(f"OK: {ok_count}")
    print(f"NG: {ng_count}")

    if prune and dead:
        for original in dead:
            cache.delete(original)
        print(f"Pruned: {len(dead)}")
        return 0

    return 1 if ng_count > 0 else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Re-probe every cached redirect")
    parser.add_argument("--config", default="config.yaml", help="Path to config YAML file")
    parser.add_argument("--prune", action="store_true", help="Delete dead redirects from the cache")
    args = parser.parse_args()

    config_path = Path(args.config)
    config = load_config(config_path) if config_path.exists() else Config()
    return asyncio.run(audit(config, prune=args.prune))


if __name__ == "__main__":
    sys.exit(main())
