#!/usr/bin/env python3
"""Redirect game asset requests to the doc-assets host when a substitute exists.

Resolution:
1) data: URIs pass through untouched.
2) The URL is normalized (absolute, no query) and looked up in the resolution cache.
3) Excluded URLs pass through without being cached.
4) The first matching redirect rule yields a candidate URL, which is probed.
5) The outcome (candidate or original) is cached and persisted.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import re
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Iterable
from urllib.parse import urljoin, urlsplit, urlunsplit

import aiohttp
import yaml

BASE_REDIRECT = "https://the-doctorpus.github.io/doc-assets"
DEFAULT_ORIGIN = "https://deeeep.io"
CACHE_KEY = "redirectCache"

# filename = name + extension, query optional, .json never redirected
FILENAME_TAIL = r"(?P<filename>[^?.]+\.(?:(?!json)[^?])+)(?:\?.*)?$"


@dataclass(slots=True)
class Config:
    """Runtime configuration loaded from config.yaml."""

    base_redirect: str = BASE_REDIRECT
    origin: str = DEFAULT_ORIGIN
    cache_path: str = ".redirect_cache.json"
    cache_key: str = CACHE_KEY
    timeout_sec: float = 8.0


@dataclass(frozen=True, slots=True)
class RedirectRule:
    """One redirect rule. ``pattern`` must define a ``filename`` group."""

    pattern: re.Pattern[str]
    target_base: str
    special_naming: bool = False


class RuleTable:
    """Ordered redirect rules plus exclusions. Order is priority."""

    def __init__(self, rules: Iterable[RedirectRule], exclusions: Iterable[re.Pattern[str]] = ()) -> None:
        self._rules = tuple(rules)
        self._exclusions = tuple(exclusions)

    @property
    def rules(self) -> tuple[RedirectRule, ...]:
        return self._rules

    @property
    def exclusions(self) -> tuple[re.Pattern[str], ...]:
        return self._exclusions

    def is_excluded(self, url: str) -> bool:
        """Return True if the URL must never be redirected."""
        return any(pattern.search(url) for pattern in self._exclusions)

    def match(self, url: str) -> tuple[RedirectRule, str | None] | None:
        """Return the first matching rule and its filename (possibly empty or None)."""
        for rule in self._rules:
            m = rule.pattern.search(url)
            if m is not None:
                return rule, m.groupdict().get("filename")
        return None


def default_rule_table(base_redirect: str = BASE_REDIRECT) -> RuleTable:
    """Build the production rule table for the given redirect host."""
    base = base_redirect.rstrip("/")
    rules = [
        # Animations
        RedirectRule(re.compile(r".+/assets/animations/" + FILENAME_TAIL), f"{base}/images/default/animations/"),
        # Characters
        RedirectRule(re.compile(r".+/assets/characters/" + FILENAME_TAIL), f"{base}/images/characters/"),
        # Spritesheets
        RedirectRule(re.compile(r".+/assets/spritesheets/" + FILENAME_TAIL), f"{base}/images/default/spritesheets/"),
        # Map maker asset packs
        RedirectRule(re.compile(r".+/assets/packs/" + FILENAME_TAIL), f"{base}/images/default/mapmaker-asset-packs/"),
        # Logo, menu and loading screen backgrounds, etc.
        RedirectRule(re.compile(r".+/img/" + FILENAME_TAIL), f"{base}/images/img/"),
        # Pets
        RedirectRule(re.compile(r".+/custom/pets/" + FILENAME_TAIL), f"{base}/images/custom/pets/"),
        # Old skins
        RedirectRule(re.compile(r".+/assets/skins/" + FILENAME_TAIL), f"{base}/images/skans/"),
        # New skins live on the CDN with per-version suffixes
        RedirectRule(
            re.compile(r"cdn\.deeeep\.io/custom/skins/" + FILENAME_TAIL),
            f"{base}/images/skans/custom/",
            special_naming=True,
        ),
    ]
    exclusions = [
        re.compile(r".+/img/(avatar|badges|stats|verified)"),
        # Terrain textures
        re.compile(r".+/assets/packs/\d+/textures"),
    ]
    return RuleTable(rules, exclusions)


class ExistenceCache:
    """Candidate URL -> reachability, for the lifetime of the process. Never evicted."""

    def __init__(self) -> None:
        self._entries: dict[str, bool] = {}

    def get(self, url: str) -> bool | None:
        return self._entries.get(url)

    def set(self, url: str, exists: bool) -> None:
        self._entries[url] = exists

    def forget(self, url: str) -> None:
        self._entries.pop(url, None)

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ExistenceVerifier:
    """Probe candidate URLs with GET, at most once per candidate per session."""

    def __init__(self, session: aiohttp.ClientSession, cache: ExistenceCache | None = None, timeout_sec: float = 8.0) -> None:
        self.session = session
        self.cache = cache if cache is not None else ExistenceCache()
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)

    async def exists(self, candidate_url: str) -> bool:
        """Return True if the candidate answered with a status in [200, 400)."""
        cached = self.cache.get(candidate_url)
        if cached is not None:
            return cached

        try:
            async with self.session.get(candidate_url, timeout=self.timeout) as resp:
                ok = 200 <= resp.status < 400
                if not ok:
                    logging.debug("Probe HTTP %s for %s", resp.status, candidate_url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logging.warning("Probe failed: %s (%s)", candidate_url, exc)
            ok = False

        self.cache.set(candidate_url, ok)
        return ok


class JsonFileStore:
    """String key-value store persisted as a single JSON object on disk."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def _read_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must hold a JSON object")
        return data

    def _write_all(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, ensure_ascii=False)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def _read_for_write(self) -> dict[str, str]:
        try:
            return self._read_all()
        except ValueError as exc:
            logging.warning("Overwriting unreadable store %s: %s", self.path, exc)
            return {}

    def get_item(self, key: str) -> str | None:
        value = self._read_all().get(key)
        return value if isinstance(value, str) else None

    def set_item(self, key: str, value: str) -> None:
        data = self._read_for_write()
        data[key] = value
        self._write_all(data)

    def remove_item(self, key: str) -> None:
        data = self._read_for_write()
        if data.pop(key, None) is not None:
            self._write_all(data)


class ResolutionCache:
    """Normalized original URL -> resolved URL, persisted in full on every write."""

    def __init__(self, store: JsonFileStore, key: str = CACHE_KEY) -> None:
        self.store = store
        self.key = key
        self._entries: dict[str, str] = {}

    def load(self) -> int:
        """Load persisted entries once at startup. Return the entry count."""
        try:
            raw = self.store.get_item(self.key)
            data = json.loads(raw) if raw else {}
        except (OSError, ValueError) as exc:
            logging.warning("Ignoring unreadable resolution cache %s: %s", self.key, exc)
            data = {}
        if not isinstance(data, dict):
            logging.warning("Ignoring resolution cache %s: not a mapping", self.key)
            data = {}
        self._entries = {k: v for k, v in data.items() if isinstance(k, str) and isinstance(v, str)}
        return len(self._entries)

    def get(self, url: str) -> str | None:
        return self._entries.get(url)

    def set(self, url: str, resolved: str) -> None:
        self._entries[url] = resolved
        self._flush()

    def delete(self, url: str) -> str | None:
        previous = self._entries.pop(url, None)
        if previous is not None:
            self._flush()
        return previous

    def items(self) -> list[tuple[str, str]]:
        return list(self._entries.items())

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _flush(self) -> None:
        try:
            self.store.set_item(self.key, json.dumps(self._entries, ensure_ascii=False))
        except (OSError, TypeError, ValueError) as exc:
            logging.warning("Could not persist resolution cache (%s entries): %s", len(self._entries), exc)


def special_filename(filename: str) -> str:
    """Strip the variant suffix: ``hat-variant2.png`` -> ``hat.png``."""
    if "-" not in filename:
        return filename
    stem = filename.split("-", 1)[0]
    ext = filename.rsplit(".", 1)[-1] if "." in filename else ""
    return f"{stem}.{ext}" if ext else stem


class UrlResolver:
    """Decide which URL an asset request should really go to."""

    def __init__(
        self,
        rule_table: RuleTable,
        verifier: ExistenceVerifier,
        cache: ResolutionCache,
        origin: str = DEFAULT_ORIGIN,
    ) -> None:
        self.rule_table = rule_table
        self.verifier = verifier
        self.cache = cache
        self.origin = origin
        self._epochs: dict[str, int] = {}

    def normalize(self, url: str) -> str:
        """Return the absolute form of ``url`` without its query string."""
        absolute = url if url.startswith("http") else urljoin(self.origin + "/", url)
        parts = urlsplit(absolute)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", parts.fragment))

    async def resolve(self, url: str) -> str:
        """Return the URL to request instead of ``url``. Never raises."""
        if url.startswith("data:"):
            return url
        try:
            return await self._resolve(url)
        except Exception:  # noqa: BLE001
            logging.exception("Resolution failed for %s; using original", url)
            return url

    def candidate_for(self, key: str) -> str | None:
        """Return the substitute URL proposed by the first rule matching ``key``, if any."""
        matched = self.rule_table.match(key)
        if matched is None:
            return None
        rule, filename = matched
        if rule.special_naming and filename:
            filename = special_filename(filename)
        if not filename:
            logging.debug("Rule matched %s without a filename", key)
            return None
        return rule.target_base + filename

    async def _resolve(self, url: str) -> str:
        key = self.normalize(url)

        cached = self.cache.get(key)
        if cached is not None:
            return cached

        if self.rule_table.is_excluded(key):
            return key

        epoch = self._epochs.get(key, 0)
        final = key
        candidate = self.candidate_for(key)
        if candidate is not None and await self.verifier.exists(candidate):
            final = candidate
            logging.debug("Redirect %s -> %s", key, candidate)

        if self._epochs.get(key, 0) != epoch:
            # invalidated while probing; leave the key unresolved
            return final
        self.cache.set(key, final)
        return final

    def invalidate(self, url: str) -> None:
        """Forget the decision for ``url`` so the next resolve starts over."""
        if url.startswith("data:"):
            return
        key = self.normalize(url)
        # one counter per invalidated key, never dropped (see ExistenceCache)
        self._epochs[key] = self._epochs.get(key, 0) + 1
        candidate = self.candidate_for(key)
        if candidate is not None:
            self.verifier.cache.forget(candidate)
        previous = self.cache.delete(key)
        if previous is not None:
            self.verifier.cache.forget(previous)
            logging.info("Invalidated %s (was %s)", key, previous)


class RedirectingSession:
    """aiohttp adapter that resolves every outgoing URL and reports transport failures."""

    def __init__(self, session: aiohttp.ClientSession, resolver: UrlResolver) -> None:
        self.session = session
        self.resolver = resolver

    async def resolve_src(self, url: str) -> str:
        """Hook for asset URLs assigned outside of a request, e.g. an image src."""
        return await self.resolver.resolve(url)

    async def request(self, method: str, url: str, **kwargs: Any) -> aiohttp.ClientResponse:
        resolved = await self.resolver.resolve(url)
        try:
            return await self.session.request(method, resolved, **kwargs)
        except (aiohttp.ClientError, asyncio.TimeoutError):
            self.resolver.invalidate(url)
            raise

    async def get(self, url: str, **kwargs: Any) -> aiohttp.ClientResponse:
        return await self.request("GET", url, **kwargs)


@asynccontextmanager
async def open_resolver(config: Config) -> AsyncIterator[UrlResolver]:
    """Load the persisted cache and open the probe session for one run."""
    cache = ResolutionCache(JsonFileStore(config.cache_path), config.cache_key)
    loaded = cache.load()
    async with aiohttp.ClientSession() as probe_session:
        verifier = ExistenceVerifier(probe_session, timeout_sec=config.timeout_sec)
        resolver = UrlResolver(default_rule_table(config.base_redirect), verifier, cache, config.origin)
        logging.info("Asset redirector loaded: %s cached resolutions", loaded)
        yield resolver


def load_config(config_path: Path) -> Config:
    """Load config.yaml and apply defaults for missing keys."""
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError("config.yaml must be a mapping")

    return Config(
        base_redirect=str(data.get("base_redirect", BASE_REDIRECT)).rstrip("/"),
        origin=str(data.get("origin", DEFAULT_ORIGIN)).rstrip("/"),
        cache_path=str(data.get("cache_path", ".redirect_cache.json")),
        cache_key=str(data.get("cache_key", CACHE_KEY)),
        timeout_sec=float(data.get("timeout_sec", 8.0)),
    )


async def run(config: Config, urls: list[str], invalidate: bool = False) -> int:
    """Resolve (or invalidate) each URL and print the outcome."""
    async with open_resolver(config) as resolver:
        for url in urls:
            if invalidate:
                resolver.invalidate(url)
                print(f"invalidated {resolver.normalize(url)}")
            else:
                print(f"{url} -> {await resolver.resolve(url)}")
    return 0


def parse_args() -> argparse.Namespace:
    """CLI options."""
    parser = argparse.ArgumentParser(description="Resolve game asset URLs against the doc-assets host")
    parser.add_argument("urls", nargs="+", help="Asset URLs (absolute or relative to the origin)")
    parser.add_argument("--config", default="config.yaml", help="Path to config YAML file")
    parser.add_argument("--invalidate", action="store_true", help="Drop cached decisions instead of resolving")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    return parser.parse_args()


def main() -> None:
    """CLI entry point."""
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    config_path = Path(args.config)
    if not config_path.exists():
        raise SystemExit(f"config file not found: {config_path}")
    config = load_config(config_path)
    raise SystemExit(asyncio.run(run(config, args.urls, invalidate=args.invalidate)))


if __name__ == "__main__":
    main()
