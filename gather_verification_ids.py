# /// script
# requires-python = ">=3.12"
# dependencies = [
#   "httpx~=0.28.0",
#   "tqdm",
#   "humanize"
# ]
# ///

"""
Collects verification-record ids (`vri_id`) from the FGIS "Arshin" search API for a list of queries.
It's server-friendly, in that it makes strictly sequential requests with a jittered sleep between them,
  backs off hard on rate-limit responses, and saves progress after every query so it can be resumed
  after a network failure and will continue from where it left off.

Usage:
  uv run ./gather_verification_ids.py --csv queries.csv --output-dir "../output_dir" --rows 50 --min-delay 3000 --max-delay 9000

Args:
  --csv (optional) -- CSV with a `query` column and an optional `year` column; default `queries.csv`
  --output-dir (optional) -- where `progress.json`, `ids.json` and `ids.csv` are written; default `.`
  --rows, --min-delay, --max-delay, --retries, --timeout, --max-pages (optional) -- see `--help`

Exit status:
  0 on success; 1 for bad input (csv or arguments); 2 for a fatal error during the run; 130 if interrupted.
"""

import argparse
import csv
import json
import logging
import math
import os
import random
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import TextIO

import httpx
import humanize
from tqdm import tqdm

## setup logging
log_level_name: str = os.getenv('LOG_LEVEL', 'INFO').upper()
log_level = getattr(
    logging, log_level_name, logging.INFO
)  # maps the string name to the corresponding logging level constant; defaults to INFO
logging.basicConfig(
    level=log_level,
    format='[%(asctime)s] %(levelname)s [%(module)s-%(funcName)s()::%(lineno)d] %(message)s',
    datefmt='%d/%b/%Y %H:%M:%S',
)
log = logging.getLogger(__name__)
## prevent httpx from logging
if log_level <= logging.INFO:
    for noisy in ('httpx', 'httpcore'):
        lg = logging.getLogger(noisy)
        lg.setLevel(logging.WARNING)  # or logging.ERROR if you prefer only errors
        lg.propagate = False  # don't bubble up to root


BASE = 'https://fgis.gost.ru'
RESULTS_PAGE_URL = f'{BASE}/fundmetrology/cm/results'
SELECT_URL = f'{BASE}/fundmetrology/cm/xcdb/vri/select'

ID_FIELD = 'vri_id'
FIELD_LIST = (
    'vri_id,org_title,mi.mitnumber,mi.mititle,mi.mitype,mi.modification,mi.number,'
    'verification_date,valid_date,applicability,result_docnum,sticker_num'
)
SORT_ORDER = 'verification_date desc,org_title asc'

DEFAULT_HEADERS: dict[str, str] = {
    'Accept': 'application/json, text/plain, */*',
    'Accept-Language': 'ru,en;q=0.9',
    'User-Agent': (
        'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/140 Safari/537.36'
    ),
}
WARMUP_ACCEPT = 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8'

## statuses the service answers with when it decides we're a bot
RATE_LIMIT_STATUSES: frozenset[int] = frozenset({403, 405, 429})

PROGRESS_FILENAME = 'progress.json'
OUT_JSON_FILENAME = 'ids.json'
OUT_CSV_FILENAME = 'ids.csv'

EXIT_OK = 0
EXIT_BAD_INPUT = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130


class FetchError(Exception):
    """
    Raised when a page request still fails after the last allowed retry.
    """

    def __init__(self, message: str, *, status: int | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.status: int | None = status
        self.attempts: int = attempts


class InputError(Exception):
    """
    Raised when the query CSV is missing, empty, or has no `query` column.
    """


@dataclass(frozen=True)
class CollectorConfig:
    """
    Holds the run's tuning knobs; built once from the CLI and handed to each collaborator.
    - `max_pages` of None means no per-query page ceiling.
    - Delays and timeout are in milliseconds.
    """

    rows: int = 50
    min_delay_ms: int = 3000
    max_delay_ms: int = 9000
    max_retries: int = 5
    timeout_ms: int = 60000
    max_pages: int | None = None

    def __post_init__(self) -> None:
        if self.rows <= 0:
            raise ValueError(f'rows must be positive, got {self.rows}')
        if self.min_delay_ms < 0 or self.min_delay_ms > self.max_delay_ms:
            raise ValueError(f'need 0 <= min-delay <= max-delay, got {self.min_delay_ms} and {self.max_delay_ms}')
        if self.max_retries < 0:
            raise ValueError(f'retries must not be negative, got {self.max_retries}')
        if self.timeout_ms <= 0:
            raise ValueError(f'timeout must be positive, got {self.timeout_ms}')
        if self.max_pages is not None and self.max_pages <= 0:
            raise ValueError(f'max-pages must be positive when given, got {self.max_pages}')

    @property
    def timeout_s(self) -> float:
        return self.timeout_ms / 1000

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> 'CollectorConfig':
        return cls(
            rows=args.rows,
            min_delay_ms=args.min_delay,
            max_delay_ms=args.max_delay,
            max_retries=args.retries,
            timeout_ms=args.timeout,
            max_pages=args.max_pages,
        )


@dataclass(frozen=True)
class QueryRecord:
    query: str
    year: str = ''

    @property
    def key(self) -> str:
        return f'{self.query}::{self.year}'


@dataclass(frozen=True)
class IdCollection:
    """
    What the paginator hands back for one query: unique ids in first-seen order, pages read, last numFound.
    """

    ids: tuple[str, ...]
    pages: int
    num_found: int


@dataclass(frozen=True)
class CollectionResult:
    """
    One finished query, in the shape stored in the checkpoint and in `ids.json`.
    """

    query: str
    year: str
    ids: tuple[str, ...]
    found: int
    pages: int
    num_found: int

    @property
    def key(self) -> str:
        return f'{self.query}::{self.year}'

    @classmethod
    def from_collection(cls, record: QueryRecord, collected: IdCollection) -> 'CollectionResult':
        return cls(
            query=record.query,
            year=record.year,
            ids=collected.ids,
            found=len(collected.ids),
            pages=collected.pages,
            num_found=collected.num_found,
        )

    @classmethod
    def from_json(cls, data: dict[str, object]) -> 'CollectionResult':
        """
        Rebuilds a result from its checkpoint form; raises on a wrong shape so the caller can discard the file.
        """
        query: object = data['query']
        year: object = data.get('year') or ''
        raw_ids: object = data.get('ids') or []
        if not isinstance(query, str) or not isinstance(year, str) or not isinstance(raw_ids, list):
            raise TypeError(f'unexpected result shape for query ``{query!r}``')
        ids: tuple[str, ...] = tuple(str(i) for i in raw_ids)
        return cls(
            query=query,
            year=year,
            ids=ids,
            found=int(data.get('found', len(ids))),  # type: ignore[arg-type]
            pages=int(data.get('pages', 0)),  # type: ignore[arg-type]
            num_found=int(data.get('numFound', 0)),  # type: ignore[arg-type]
        )

    def to_json(self) -> dict[str, object]:
        return {
            'query': self.query,
            'year': self.year,
            'ids': list(self.ids),
            'found': self.found,
            'pages': self.pages,
            'numFound': self.num_found,
        }


@dataclass
class RunState:
    """
    Resume state: `index` is the next unprocessed query position; `results` holds finished queries in order.
    """

    index: int = 0
    results: list[CollectionResult] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: object) -> 'RunState':
        if not isinstance(data, dict):
            raise TypeError(f'checkpoint root must be an object, got {type(data).__name__}')
        index: object = data.get('index', 0)
        raw_results: object = data.get('results', [])
        if not isinstance(index, int) or isinstance(index, bool) or index < 0:
            raise ValueError(f'bad checkpoint index, ``{index!r}``')
        if not isinstance(raw_results, list):
            raise TypeError('checkpoint results must be a list')
        results: list[CollectionResult] = [CollectionResult.from_json(r) for r in raw_results]
        return cls(index=index, results=results)

    def to_json(self) -> dict[str, object]:
        return {'index': self.index, 'results': [r.to_json() for r in self.results]}


class DelayPolicy:
    """
    Computes and applies every wait the run makes.
    - Returns uniformly distributed integer delays, inclusive of both bounds.
    - Applies polite pacing between pages and between queries.
    - Computes retry backoff on two curves: a harsher one for rate-limit statuses, a gentler one for everything else.
    - Takes an injectable random source and sleeper so tests can run without waiting.
    """

    RATE_LIMIT_BASE_MS = 2000
    RATE_LIMIT_JITTER_MS = 1000
    RATE_LIMIT_BOUNDS_MS = (2000, 60000)
    GENERIC_BASE_MS = 1500
    GENERIC_JITTER_MS = 800
    GENERIC_BOUNDS_MS = (1000, 45000)

    def __init__(
        self,
        min_delay_ms: int,
        max_delay_ms: int,
        *,
        rng: random.Random | None = None,
        sleeper: Callable[[float], None] | None = None,
    ) -> None:
        self.min_delay_ms: int = min_delay_ms
        self.max_delay_ms: int = max_delay_ms
        self.rng: random.Random = rng if rng is not None else random.Random()
        self.sleeper: Callable[[float], None] = sleeper if sleeper is not None else _sleep

    def jittered_delay(self, low_ms: int, high_ms: int) -> int:
        return self.rng.randint(low_ms, high_ms)

    def backoff_ms(self, attempt: int, rate_limited: bool) -> int:
        """
        Returns the wait before retry number `attempt + 1`.
        Rate-limit: clamp(2000 * 2^attempt + jitter(0, 1000), 2000, 60000)
        Other:      clamp(1500 * 2^attempt + jitter(0, 800), 1000, 45000)
        """
        if rate_limited:
            base, jitter, (low, high) = self.RATE_LIMIT_BASE_MS, self.RATE_LIMIT_JITTER_MS, self.RATE_LIMIT_BOUNDS_MS
        else:
            base, jitter, (low, high) = self.GENERIC_BASE_MS, self.GENERIC_JITTER_MS, self.GENERIC_BOUNDS_MS
        raw: int = base * 2**attempt + self.jittered_delay(0, jitter)
        return _clamp(raw, low, high)

    def pause(self) -> int:
        """
        Sleeps a polite, jittered interval between successful fetches; returns the milliseconds slept.
        """
        delay_ms: int = self.jittered_delay(self.min_delay_ms, self.max_delay_ms)
        self.sleep_ms(delay_ms)
        return delay_ms

    def sleep_ms(self, delay_ms: int) -> None:
        self.sleeper(delay_ms / 1000)


def build_search_params(query: str, year: str, start: int = 0, rows: int = 20) -> list[tuple[str, str]]:
    """
    Builds the select-endpoint parameters; a list of pairs because `fq` repeats.
    """
    params: list[tuple[str, str]] = [('fq', f'*{query}*')]
    if year:
        params.append(('fq', f'verification_year:{year}'))
    params.extend(
        [
            ('q', '*'),
            ('fl', FIELD_LIST),
            ('sort', SORT_ORDER),
            ('rows', str(rows)),
            ('start', str(start)),
        ]
    )
    return params


class SessionBootstrap:
    """
    Builds the single cookie-bearing client the whole run shares.
    - Sets browser-like default headers, the overall timeout, and redirect-following.
    - Relies on httpx's cookie jar to carry the session cookie to later requests.
    - Warms up by loading the human-facing results page, as a browser would, before any data request.
    - Never fails on the warm-up; the data requests have their own retries.
    """

    @staticmethod
    def create_session(config: CollectorConfig, transport: httpx.BaseTransport | None = None) -> httpx.Client:
        client = httpx.Client(
            headers=DEFAULT_HEADERS,
            timeout=httpx.Timeout(config.timeout_s),
            follow_redirects=True,
            transport=transport,
        )
        try:
            resp: httpx.Response = client.get(RESULTS_PAGE_URL, headers={'Accept': WARMUP_ACCEPT})
            if resp.is_success:
                log.debug(f'warm-up ok; cookies now, ``{sorted(client.cookies.keys())}``')
            else:
                log.warning(f'warm-up page answered HTTP {resp.status_code}; continuing without it')
        except httpx.HTTPError as exc:
            log.warning(f'warm-up request failed ({exc!r}); continuing, data requests will retry')
        return client


class ApiClient:
    """
    Issues one logical select request with classification, backoff, and a retry ceiling.
    - Sends the `Referer` and `X-Requested-With` headers the service expects from its own UI.
    - Treats any non-2xx status, transport error, timeout, or non-JSON body as a failure.
    - Backs off harder on 403/405/429, which the service uses for rate limiting.
    - Retries in a bounded loop; raises `FetchError` after `max_retries` retries.
    - Returns the parsed body as-is; shape checks belong to the paginator.
    """

    def __init__(self, client: httpx.Client, config: CollectorConfig, delays: DelayPolicy) -> None:
        self.client: httpx.Client = client
        self.config: CollectorConfig = config
        self.delays: DelayPolicy = delays

    def fetch_page(self, params: Sequence[tuple[str, str]]) -> object:
        max_retries: int = self.config.max_retries
        attempt: int = 0
        while True:
            status: int | None = None
            try:
                resp: httpx.Response = self.client.get(
                    SELECT_URL,
                    params=list(params),
                    headers={'Referer': RESULTS_PAGE_URL, 'X-Requested-With': 'XMLHttpRequest'},
                    timeout=self.config.timeout_s,
                )
                status = resp.status_code
                resp.raise_for_status()
                return resp.json()
            except (httpx.HTTPError, ValueError) as exc:  # ValueError covers a non-JSON body
                if attempt >= max_retries:
                    raise FetchError(
                        f'giving up after {attempt + 1} attempt(s): {exc}', status=status, attempts=attempt + 1
                    ) from exc
                rate_limited: bool = status in RATE_LIMIT_STATUSES
                backoff: int = self.delays.backoff_ms(attempt, rate_limited)
                reason: str = f'HTTP {status}' if isinstance(exc, httpx.HTTPStatusError) else repr(exc)
                log.warning(f'  -> request failed ({reason}), backoff {backoff} ms, attempt {attempt + 1}/{max_retries}')
                self.delays.sleep_ms(backoff)
                attempt += 1


class Paginator:
    """
    Pages through the results for one query and returns the unique ids found.
    - Stops at the configured page ceiling, when `start` passes `numFound`, or on a malformed or empty page.
    - Treats the latest `numFound` as authoritative, since the index can change mid-run.
    - Dedups ids across pages; docs without an id are skipped.
    - Pauses politely between pages; never touches checkpoint state.
    """

    def __init__(self, api: ApiClient, config: CollectorConfig, delays: DelayPolicy) -> None:
        self.api: ApiClient = api
        self.config: CollectorConfig = config
        self.delays: DelayPolicy = delays

    def collect_ids(self, query: str, year: str) -> IdCollection:
        rows: int = self.config.rows
        max_pages: int | None = self.config.max_pages
        start: int = 0
        pages: int = 0
        num_found: int = 0
        seen: set[str] = set()
        ids: list[str] = []

        while True:
            if max_pages is not None and pages >= max_pages:
                log.warning(f'  -> reached max-pages={max_pages}, stopping pagination')
                break

            log.info(f'  page {pages + 1}, start={start} ...')
            data: object = self.api.fetch_page(build_search_params(query, year, start, rows))
            response: object = data.get('response') if isinstance(data, dict) else None
            if not isinstance(response, dict):
                log.warning('  -> empty reply / no `response` container, stopping pagination')
                break

            reported: object = response.get('numFound')
            if isinstance(reported, float) and reported.is_integer():
                reported = int(reported)
            if isinstance(reported, int) and not isinstance(reported, bool):
                if pages > 0 and reported != num_found:
                    log.debug(f'  numFound changed mid-query, {num_found} -> {reported}')
                num_found = reported
            if pages == 0:
                est: int = math.ceil(num_found / rows)
                log.info(f'  numFound={num_found}, rows={rows}, ~pages={est or "?"}')

            docs: object = response.get('docs')
            if not isinstance(docs, list) or not docs:
                if start < num_found:
                    log.warning(f'  -> no docs at start={start} although numFound={num_found}, stopping pagination')
                break

            for doc in docs:
                if not isinstance(doc, dict):
                    continue
                doc_id: object = doc.get(ID_FIELD)
                if not doc_id:
                    continue
                doc_id_str: str = str(doc_id)
                if doc_id_str not in seen:
                    seen.add(doc_id_str)
                    ids.append(doc_id_str)

            pages += 1
            start += rows

            if start >= num_found:
                break
            pause_ms: int = self.delays.pause()
            log.debug(f'  paused {pause_ms} ms between pages')

        return IdCollection(ids=tuple(ids), pages=pages, num_found=num_found)


class CheckpointStore:
    """
    Persists run state so an interrupted run resumes at the next unfinished query.
    - Loads leniently: a missing, unreadable, or corrupt file means "start from the beginning".
    - Saves atomically (temp file, fsync, rename) so a crash mid-write never leaves a truncated checkpoint.
    - Writes human-auditable JSON with indentation and non-ascii text kept readable.
    """

    def __init__(self, path: Path) -> None:
        self.path: Path = path

    def load(self) -> RunState:
        if not self.path.exists():
            log.debug(f'no checkpoint at ``{self.path}``; starting fresh')
            return RunState()
        try:
            with self.path.open('r', encoding='utf-8') as fh:
                data: object = json.load(fh)
            state: RunState = RunState.from_json(data)
        except (OSError, ValueError, TypeError, KeyError) as exc:
            log.warning(f'could not read checkpoint ``{self.path}`` ({exc!r}); starting from the first query')
            return RunState()
        log.info(f'loaded checkpoint; index={state.index}, results={len(state.results)}')
        return state

    def save(self, state: RunState) -> None:
        _write_atomically(self.path, lambda fh: json.dump(state.to_json(), fh, ensure_ascii=False, indent=2))
        log.debug(f'checkpoint saved; index={state.index}')


class Collector:
    """
    Drives the whole multi-query run.
    - Starts at the checkpoint's index and reuses any result already checkpointed under the same query key;
      a repeated csv row re-appends that result so each row keeps one entry.
    - Collects each remaining query, appends its result, advances the index, and saves before moving on.
    - Pauses politely between freshly collected queries.
    - Lets `FetchError` propagate; completed queries are already on disk.
    """

    def __init__(
        self, paginator: Paginator, checkpoint: CheckpointStore, delays: DelayPolicy, *, show_progress: bool = True
    ) -> None:
        self.paginator: Paginator = paginator
        self.checkpoint: CheckpointStore = checkpoint
        self.delays: DelayPolicy = delays
        self.show_progress: bool = show_progress

    def run(self, records: Sequence[QueryRecord], state: RunState) -> RunState:
        total: int = len(records)
        done: dict[str, CollectionResult] = {r.key: r for r in state.results}
        log.info(f'total queries: {total}; starting at {min(state.index, total) + 1}')

        for i in tqdm(
            range(state.index, total),
            initial=min(state.index, total),
            total=total,
            desc='Processing queries',
            disable=not self.show_progress,
        ):
            record: QueryRecord = records[i]
            if record.key in done:
                log.info(f'[{i + 1}/{total}] "{record.query}" already checkpointed; reusing')
                if len(state.results) <= i:  # a repeated row gets its own entry; a lagging index already has one
                    state.results.append(done[record.key])
                state.index = i + 1
                self.checkpoint.save(state)
                continue

            log.info(f'[{i + 1}/{total}] "{record.query}"  year={record.year or "(any)"}')
            t0: float = time.monotonic()
            collected: IdCollection = self.paginator.collect_ids(record.query, record.year)
            elapsed = timedelta(seconds=time.monotonic() - t0)
            result: CollectionResult = CollectionResult.from_collection(record, collected)
            log.info(
                f'  found: {result.found} id(s) (numFound={result.num_found}, pages={result.pages}), '
                f'in {humanize.precisedelta(elapsed, minimum_unit="seconds", format="%0.1f")}'
            )

            state.results.append(result)
            state.index = i + 1
            done[result.key] = result
            self.checkpoint.save(state)

            if i + 1 < total:
                pause_ms: int = self.delays.pause()
                log.info(f'  paused {pause_ms} ms')

        return state


class QueryLoader:
    """
    Reads the query CSV into `QueryRecord`s.
    - Accepts a BOM, standard quoting, and any column order; header names are case-insensitive.
    - Requires a `query` column; `year` is optional.
    - Skips blank rows and rows with an empty query.
    """

    @staticmethod
    def load_records(path: Path) -> list[QueryRecord]:
        try:
            with path.open('r', encoding='utf-8-sig', newline='') as fh:
                rows: list[list[str]] = [
                    [cell.strip() for cell in row] for row in csv.reader(fh) if any(cell.strip() for cell in row)
                ]
        except OSError as exc:
            raise InputError(f'cannot read csv ``{path}``: {exc}') from exc
        except UnicodeDecodeError as exc:
            raise InputError(f'csv ``{path}`` is not valid utf-8: {exc}') from exc
        except csv.Error as exc:
            raise InputError(f'malformed csv ``{path}``: {exc}') from exc
        if not rows:
            raise InputError(f'csv ``{path}`` is empty')

        header: list[str] = [h.lower() for h in rows[0]]
        if 'query' not in header:
            raise InputError(f'csv ``{path}`` has no "query" column; header was ``{rows[0]}``')
        qi: int = header.index('query')
        yi: int | None = header.index('year') if 'year' in header else None

        records: list[QueryRecord] = []
        for row in rows[1:]:
            query: str = row[qi] if qi < len(row) else ''
            year: str = row[yi] if yi is not None and yi < len(row) else ''
            if not query:
                continue
            records.append(QueryRecord(query=query, year=year))
        if not records:
            raise InputError(f'csv ``{path}`` has a header but no queries')
        log.debug(f'loaded {len(records)} query record(s) from ``{path}``')
        return records


class OutputWriter:
    """
    Writes the final artifacts from the run's results.
    - `ids.json`: the list of per-query results, same shape as in the checkpoint.
    - `ids.csv`: one `query,year,vri_id` row per id, all fields quoted; queries with no ids add no rows.
    """

    def __init__(self, out_dir: Path) -> None:
        self.out_dir: Path = out_dir

    @property
    def json_path(self) -> Path:
        return self.out_dir / OUT_JSON_FILENAME

    @property
    def csv_path(self) -> Path:
        return self.out_dir / OUT_CSV_FILENAME

    def write_json(self, results: Iterable[CollectionResult]) -> Path:
        payload: list[dict[str, object]] = [r.to_json() for r in results]
        _write_atomically(self.json_path, lambda fh: json.dump(payload, fh, ensure_ascii=False, indent=2))
        return self.json_path

    def write_csv(self, results: Iterable[CollectionResult]) -> Path:
        def _dump(fh: TextIO) -> None:
            writer = csv.writer(fh, quoting=csv.QUOTE_ALL, lineterminator='\n')
            writer.writerow(['query', 'year', ID_FIELD])
            for result in results:
                for id_ in result.ids:
                    writer.writerow([result.query, result.year, id_])

        _write_atomically(self.csv_path, _dump, newline='')
        return self.csv_path


class CLI:
    """
    Manages command-line parsing for the script entrypoint.
    - Delays and timeout are given in milliseconds.
    - `--max-pages` is optional; omitted means no per-query page ceiling.
    - Exposes a parse helper to support testing with custom argv.
    """

    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(description='Collect verification-record ids for a CSV of queries.')
        parser.add_argument('--csv', default='queries.csv', help='CSV with a `query` column and optional `year` column')
        parser.add_argument('--output-dir', default='.', help='Directory for progress.json, ids.json and ids.csv')
        parser.add_argument('--rows', type=int, default=50, metavar='INTEGER', help='Page size (default: 50)')
        parser.add_argument(
            '--min-delay', type=int, default=3000, metavar='MS', help='Minimum pause between requests (default: 3000)'
        )
        parser.add_argument(
            '--max-delay', type=int, default=9000, metavar='MS', help='Maximum pause between requests (default: 9000)'
        )
        parser.add_argument('--retries', type=int, default=5, metavar='INTEGER', help='Retries per page (default: 5)')
        parser.add_argument(
            '--timeout', type=int, default=60000, metavar='MS', help='Overall timeout per request (default: 60000)'
        )
        parser.add_argument(
            '--max-pages',
            type=int,
            default=None,
            metavar='INTEGER',
            help='Optional. Stop each query after this many pages (useful for testing).',
        )
        parser.add_argument('--no-progress', action='store_true', help='Hide the progress bar')
        return parser

    @staticmethod
    def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
        return CLI.build_parser().parse_args(argv)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def _write_atomically(path: Path, dump: Callable[[TextIO], None], *, newline: str | None = None) -> None:
    """
    Writes via `dump(fh)` to a sibling temp file, then renames it over `path`.
    On any failure the temp file is removed and `path` is left as it was.
    """
    tmp_path: Path = path.with_name(f'{path.name}.tmp')
    try:
        with tmp_path.open('w', encoding='utf-8', newline=newline) as fh:
            dump(fh)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _sleep(backoff_s: float) -> None:
    """
    Sleeps for given seconds; centralizes sleep for easier tweaking.
    """
    time.sleep(backoff_s)


def main(argv: list[str] | None = None) -> int:
    """
    Loads queries, resumes from the checkpoint, collects ids for each remaining query, writes ids.json and ids.csv.

    Flow:
    - Parses CLI args into an immutable config; bad values exit 1.
    - Loads the query CSV; a missing or malformed file exits 1 before any network activity.
    - Loads the checkpoint (or starts fresh).
    - Creates the shared client and warms up its session cookie.
    - Runs the collector, which checkpoints after every query.
    - On a fatal error exits 2; completed queries stay checkpointed for the next run.
    - Writes the output files from the final state.

    Called by: dundermain
    """
    ## handle args --------------------------------------------------
    args: argparse.Namespace = CLI.parse_args(argv)
    try:
        config: CollectorConfig = CollectorConfig.from_args(args)
    except ValueError as exc:
        log.error(f'bad arguments: {exc}')
        return EXIT_BAD_INPUT
    out_dir: Path = Path(args.output_dir).expanduser().resolve()

    ## load queries -------------------------------------------------
    try:
        records: list[QueryRecord] = QueryLoader.load_records(Path(args.csv).expanduser())
    except InputError as exc:
        log.error(f'{exc}')
        return EXIT_BAD_INPUT
    out_dir.mkdir(parents=True, exist_ok=True)

    ## load checkpoint ----------------------------------------------
    checkpoint = CheckpointStore(out_dir / PROGRESS_FILENAME)
    state: RunState = checkpoint.load()

    ## collect -------------------------------------------------------
    delays = DelayPolicy(config.min_delay_ms, config.max_delay_ms)
    try:
        with SessionBootstrap.create_session(config) as client:
            api = ApiClient(client, config, delays)
            paginator = Paginator(api, config, delays)
            collector = Collector(paginator, checkpoint, delays, show_progress=not args.no_progress)
            state = collector.run(records, state)
    except KeyboardInterrupt:
        log.warning(f'interrupted; completed queries are saved in ``{checkpoint.path}``')
        return EXIT_INTERRUPTED
    except Exception:
        log.exception(f'fatal error; completed queries are saved in ``{checkpoint.path}``')
        return EXIT_FATAL

    ## write outputs -------------------------------------------------
    writer = OutputWriter(out_dir)
    json_path: Path = writer.write_json(state.results)
    csv_path: Path = writer.write_csv(state.results)

    ## wrap up output -----------------------------------------------
    total_ids: int = sum(r.found for r in state.results)
    print(f'Done. Collected {humanize.intcomma(total_ids)} id(s) for {len(state.results)} query(ies).')
    print(f'IDs JSON:   {json_path}')
    print(f'IDs CSV:    {csv_path}')
    print(f'Checkpoint: {checkpoint.path}')
    return EXIT_OK

    ## end def main()


if __name__ == '__main__':
    raise SystemExit(main())
