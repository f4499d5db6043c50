#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fetch every page of a rate-limited news search and digest it.
Walks the NY Times Article Search results one page per interval and folds each
page into running statistics, then reports the aggregate once all pages are in.

Features:
- Configurable query, pacing and retries via YAML config
- Page 0 fetched eagerly to learn the total hit count
- Missing pages recorded and reported instead of aborting the run
- Running per-desk averages, media leaders and most prolific author
- Metrics tracking for monitoring
"""

import os
import sys
import yaml
import json
import requests
import time
import traceback
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional
from urllib.parse import quote_plus, urlencode
from collections import defaultdict

# Fix encoding for Windows console
if sys.platform == 'win32':
    sys.stdout.reconfigure(encoding='utf-8')

# ============================================================================
# LOGGING SETUP
# ============================================================================

def setup_logging():
    """Configure logging with appropriate format and level."""
    logging.basicConfig(
        level=logging.INFO,
        format='[%(levelname)s] %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    return logging.getLogger(__name__)

logger = setup_logging()

# ============================================================================
# CONSTANTS
# ============================================================================

# File paths
CONFIG_FILE = "_data/digest_config.yml"
DATE_FORMAT = "%Y-%m-%d"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Default values (used if config file is missing)
DEFAULT_BASE_URL = "https://api.nytimes.com/svc/search/v2/articlesearch.json"
DEFAULT_BEGIN_DATE = "20190101"
DEFAULT_END_DATE = "20190107"
DEFAULT_TIMEOUT_SECONDS = 15
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 0.1
DEFAULT_PAGE_SIZE = 10  # Fixed by the API
DEFAULT_RATE_LIMIT_INTERVAL_SECONDS = 6.0  # 10 requests / minute cap
DEFAULT_METRICS_EXPORT_TO_JSON = False
DEFAULT_METRICS_JSON_PATH = "_data/digest_metrics.json"
DEFAULT_REPORT_EXPORT_TO_JSON = False
DEFAULT_REPORT_JSON_PATH = "_data/digest_report.json"

# API Configuration
ENV_VAR_API_KEY = "NYT_API_KEY"
API_KEY_PARAM = "api-key"
RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

# Run status
STATUS_NOT_STARTED = "not_started"
STATUS_IN_PROGRESS = "in_progress"
STATUS_DONE = "done"
STATUS_ORDER = (STATUS_NOT_STARTED, STATUS_IN_PROGRESS, STATUS_DONE)

# Modes
MODE_MEDIA = "1"
MODE_AUTHOR = "2"
MODE_BOTH = "3"
VALID_MODES = (MODE_MEDIA, MODE_AUTHOR, MODE_BOTH)
MODE_PROMPT = (
    "Which feature to run?\n"
    "1) Get the article with the most multimedia objects attached, along with the count of multimedia objects\n"
    "2) Get the author who wrote the most articles\n"
    "3) Both\n"
)

# Raw record fields that must be present (and not null)
REQUIRED_RECORD_FIELDS = (
    "pub_date", "byline", "word_count", "headline",
    "abstract", "web_url", "news_desk", "multimedia"
)
NAME_PARTS = ("firstname", "middlename", "lastname")

# Metrics tracking
METRICS_SEPARATOR = "=" * 60
DESK_BANNER = "=" * 20
ARTICLE_SEPARATOR = "-" * 23

# Message constants
MSG_INFO_LOADED_CONFIG = "Loaded configuration from {path}"
MSG_WARNING_CONFIG_NOT_FOUND = "Config file {path} not found, using defaults"
MSG_WARNING_CONFIG_ERROR = "Error loading config file: {error}, using defaults"
MSG_WARNING_CONFIG_NOT_POSITIVE = "Config value {path} must be a positive number, got {value!r}; using {default}"
MSG_WARNING_NO_KEY_ENV = "No NYT_API_KEY found in environment variables"
MSG_INFO_SET_KEY = "Set it with: export NYT_API_KEY='your-key' (Linux/Mac)"
MSG_INFO_GET_KEY = "Get a key at: https://developer.nytimes.com/"
MSG_INFO_STARTING = "Starting news search digest"
MSG_INFO_DATE_RANGE = "Date range: {begin_date} to {end_date}"
MSG_INFO_MODE_SELECTED = "Selected option {mode}"
MSG_INFO_INVALID_MODE = "Refresh and enter just 1, 2, or 3.\n"
MSG_INFO_GOT_PAGE = "Got page={page}"
MSG_WARNING_PAGE_MISSING = "Page {page} will be missing."
MSG_WARNING_TRANSPORT = "Transport failure on page {page}: {error}"
MSG_WARNING_MALFORMED_PAGE = "Malformed data on page {page}: {error}"
MSG_WARNING_RETRYING = "Request failed ({error}), retrying in {delay:.2f}s (attempt {attempt}/{attempts})"
MSG_WARNING_TICK_SKIPPED = "Previous fetch still running, skipping tick for page {page}"
MSG_INFO_RUN_IN_PROGRESS = "A run is already in progress, ignoring request"
MSG_INFO_RUN_DONE = "Run already finished, displaying stored results"
MSG_WARNING_HITS_UNKNOWN = "Total hit count unknown (first page failed), finishing run"
MSG_INFO_TOTAL_HITS = "Search reported {hits} hits across {pages} page(s)"
MSG_INFO_RUN_COMPLETE = "[OK] Fetched {fetched} page(s), {missing} missing"
MSG_INFO_WAIT_RATE_LIMIT = "It seems NY Times cap me at 10 requests per minute."
MSG_INFO_WAIT_ESTIMATE = "We are looking at roughly {seconds:.1f} seconds. Have a cup of coffee?"
MSG_INFO_MISSING_PAGES = "The follow pages are missing: {pages}"
MSG_INFO_MEDIA_LEADER = "The news URL with the most multimedia objects: "
MSG_INFO_MEDIA_COUNT = "Number of multimedia objects: {count}"
MSG_INFO_AUTHOR_LEADER = "The author who wrote the most articles in this search: {author}"
MSG_INFO_DESK_AVERAGE = "Average word count in this news desk: {avg:.2f}"
MSG_INFO_METRICS_EXPORTED = "Metrics exported to {path}"
MSG_WARNING_EXPORT_FAILED = "Failed to export metrics to JSON: {error}"
MSG_INFO_REPORT_EXPORTED = "Report exported to {path}"
MSG_WARNING_REPORT_EXPORT_FAILED = "Failed to export report to JSON: {error}"
MSG_DEBUG_FETCHING = "Fetching: {url}"
MSG_INFO_INTERRUPTED = "Interrupted by user"
MSG_FATAL_ERROR = "FATAL ERROR"
MSG_ERROR_UNEXPECTED_MAIN = "Unexpected error in main"

# ============================================================================
# ERRORS
# ============================================================================

class DigestError(Exception):
    """Base class for search digest errors."""


class TransportError(DigestError):
    """Network or HTTP failure that survived every retry."""


class MalformedRecordError(DigestError):
    """A raw search record is missing a required field or has a bad value."""


class MalformedPageError(MalformedRecordError):
    """A response body lacks response.meta.hits or response.docs."""


class InvalidModeSelection(DigestError):
    """Mode input other than 1, 2 or 3."""

# ============================================================================
# CONFIGURATION LOADING
# ============================================================================

def load_config() -> Dict:
    """Load configuration from YAML file with fallback to defaults."""
    try:
        if os.path.exists(CONFIG_FILE):
            with open(CONFIG_FILE, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f) or {}
            logger.info(MSG_INFO_LOADED_CONFIG.format(path=CONFIG_FILE))
            return config
        else:
            logger.warning(MSG_WARNING_CONFIG_NOT_FOUND.format(path=CONFIG_FILE))
            return {}
    except Exception as e:
        logger.warning(MSG_WARNING_CONFIG_ERROR.format(error=e))
        return {}

def get_config_value(config: Dict, path: str, default):
    """Safely get nested config value using dot notation (e.g., 'api.timeout_seconds')."""
    keys = path.split('.')
    value = config
    for key in keys:
        if isinstance(value, dict):
            value = value.get(key)
            if value is None:
                return default
        else:
            return default
    return value if value is not None else default

def get_positive_config_value(config: Dict, path: str, default):
    """Like get_config_value, but falls back to the default unless the value is a positive number."""
    value = get_config_value(config, path, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        logger.warning(MSG_WARNING_CONFIG_NOT_POSITIVE.format(path=path, value=value, default=default))
        return default
    return value

def resolve_api_key(config: Dict) -> str:
    """Environment variable wins over the config file."""
    return os.environ.get(ENV_VAR_API_KEY) or get_config_value(config, 'api.api_key', "")


@dataclass(frozen=True)
class SearchConfig:
    """Immutable query parameters and pacing for one run."""
    base_url: str
    begin_date: str
    end_date: str
    api_key: str
    query: str = ""
    page_size: int = DEFAULT_PAGE_SIZE
    interval_seconds: float = DEFAULT_RATE_LIMIT_INTERVAL_SECONDS

    @property
    def search_url(self) -> str:
        params = {API_KEY_PARAM: self.api_key, "begin_date": self.begin_date, "end_date": self.end_date}
        if self.query:
            params["q"] = self.query
        return f"{self.base_url}?{urlencode(params)}"

    @property
    def seconds_per_article(self) -> float:
        return self.interval_seconds / self.page_size

    def page_url(self, page: int) -> str:
        return self.search_url + "&page=" + str(page)

    def redact(self, url: str) -> str:
        """Hide the access token before a URL goes to the log."""
        if not self.api_key:
            return url
        return url.replace(quote_plus(self.api_key), "***").replace(self.api_key, "***")


def build_search_config(config: Dict, api_key: str) -> SearchConfig:
    """Build the run's SearchConfig from the YAML config dict."""
    return SearchConfig(
        base_url=get_config_value(config, 'api.base_url', DEFAULT_BASE_URL),
        begin_date=str(get_config_value(config, 'query.begin_date', DEFAULT_BEGIN_DATE)),
        end_date=str(get_config_value(config, 'query.end_date', DEFAULT_END_DATE)),
        api_key=api_key,
        query=get_config_value(config, 'query.q', ""),
        page_size=get_positive_config_value(config, 'api.page_size', DEFAULT_PAGE_SIZE),
        interval_seconds=get_positive_config_value(config, 'api.rate_limit_interval_seconds', DEFAULT_RATE_LIMIT_INTERVAL_SECONDS),
    )

# ============================================================================
# METRICS TRACKING
# ============================================================================

class MetricsTracker:
    """Track metrics for monitoring and observability."""

    def __init__(self):
        self.start_time = time.time()
        self.metrics = defaultdict(int)
        self.response_time_ms: List[float] = []

    def record_api_call(self, response_time_ms: float, success: bool = True):
        """Record one page request with its response time."""
        self.metrics['api_calls'] += 1
        self.response_time_ms.append(response_time_ms)
        if not success:
            self.metrics['api_errors'] += 1

    def record_page_fetched(self, article_count: int):
        self.metrics['pages_fetched'] += 1
        self.metrics['articles_folded'] += article_count

    def record_page_missing(self):
        self.metrics['pages_missing'] += 1

    def get_total_time(self) -> float:
        """Get total execution time in seconds."""
        return time.time() - self.start_time

    def to_dict(self) -> Dict:
        """Convert metrics to dictionary for JSON export."""
        response_times = self.response_time_ms
        avg_response_time = (
            sum(response_times) / len(response_times)
            if response_times else 0
        )
        return {
            'execution_time_seconds': round(self.get_total_time(), 2),
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'api_calls': self.metrics['api_calls'],
            'api_errors': self.metrics['api_errors'],
            'pages_fetched': self.metrics['pages_fetched'],
            'pages_missing': self.metrics['pages_missing'],
            'articles_folded': self.metrics['articles_folded'],
            'response_time_stats': {
                'average_ms': round(avg_response_time, 2),
                'min_ms': round(min(response_times), 2) if response_times else 0,
                'max_ms': round(max(response_times), 2) if response_times else 0,
                'count': len(response_times)
            }
        }

    def export_to_json(self, file_path: str) -> bool:
        """Export metrics to JSON file."""
        try:
            write_json(file_path, self.to_dict())
            logger.info(MSG_INFO_METRICS_EXPORTED.format(path=file_path))
            return True
        except Exception as e:
            logger.warning(MSG_WARNING_EXPORT_FAILED.format(error=e))
            return False

    def print_summary(self):
        """Print metrics summary."""
        summary = self.to_dict()
        logger.info(f"\n{METRICS_SEPARATOR}")
        logger.info("[METRICS] Execution Summary")
        logger.info(f"{METRICS_SEPARATOR}")
        logger.info(f"Total execution time: {summary['execution_time_seconds']:.2f} seconds")
        logger.info(f"API Calls: {summary['api_calls']}")
        logger.info(f"API Errors: {summary['api_errors']}")
        logger.info(f"Pages Fetched: {summary['pages_fetched']}")
        logger.info(f"Pages Missing: {summary['pages_missing']}")
        logger.info(f"Articles Folded: {summary['articles_folded']}")
        if self.response_time_ms:
            stats = summary['response_time_stats']
            logger.info(f"Avg Response Time: {stats['average_ms']:.2f}ms")
            logger.info(f"Min Response Time: {stats['min_ms']:.2f}ms")
            logger.info(f"Max Response Time: {stats['max_ms']:.2f}ms")
        logger.info(f"{METRICS_SEPARATOR}")


def write_json(file_path: str, payload: Dict):
    directory = os.path.dirname(file_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(file_path, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2, ensure_ascii=False)

# ============================================================================
# RECORD NORMALIZATION
# ============================================================================

@dataclass(frozen=True)
class Article:
    """One search result in canonical shape."""
    date: date
    authors: tuple
    word_count: int
    headline: str
    abstract: str
    media_count: int
    url: str
    news_desk: str

    def to_dict(self) -> Dict:
        return {
            "date": self.date.strftime(DATE_FORMAT),
            "author": list(self.authors),
            "wordCount": self.word_count,
            "headline": self.headline,
            "abstract": self.abstract,
            "url": self.url,
            "mediaCount": self.media_count,
        }


def _require(mapping: Dict, key: str, context: str = "record"):
    if not isinstance(mapping, dict) or mapping.get(key) is None:
        raise MalformedRecordError(f"{context} missing required field '{key}'")
    return mapping[key]

def format_pub_date(pub_date: str) -> date:
    """
    Truncate an ISO-8601 timestamp to its date portion.
    Everything before the 'T' separator is the calendar date.
    """
    if not isinstance(pub_date, str) or "T" not in pub_date:
        raise MalformedRecordError(f"pub_date has no time separator: {pub_date!r}")
    prefix = pub_date[:pub_date.index("T")]
    try:
        return datetime.strptime(prefix, DATE_FORMAT).date()
    except ValueError as e:
        raise MalformedRecordError(f"pub_date is not a calendar date: {pub_date!r}") from e

def build_full_name(person: Dict) -> str:
    """
    Join first, middle and last name with single spaces.
    Parts that are missing, null or blank are left out.
    """
    parts = []
    for part in NAME_PARTS:
        value = person.get(part)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            parts.append(value)
    return " ".join(parts)

def _non_negative_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedRecordError(f"{name} must be a non-negative integer, got {value!r}")
    return value

def _string(value, name: str) -> str:
    if not isinstance(value, str):
        raise MalformedRecordError(f"{name} must be a string, got {type(value).__name__}")
    return value

def normalize_record(doc: Dict) -> Article:
    """Convert one raw search record into an Article. Pure; raises MalformedRecordError."""
    if not isinstance(doc, dict):
        raise MalformedRecordError(f"record is not an object: {type(doc).__name__}")
    for key in REQUIRED_RECORD_FIELDS:
        _require(doc, key)

    people = _require(doc['byline'], 'person', context="byline")
    if not isinstance(people, list):
        raise MalformedRecordError("byline.person must be a list")
    authors = []
    for person in people:
        if not isinstance(person, dict):
            raise MalformedRecordError("byline.person entries must be objects")
        authors.append(build_full_name(person))

    multimedia = doc['multimedia']
    if not isinstance(multimedia, list):
        raise MalformedRecordError("multimedia must be a list")

    return Article(
        date=format_pub_date(doc['pub_date']),
        authors=tuple(authors),
        word_count=_non_negative_int(doc['word_count'], 'word_count'),
        headline=_string(_require(doc['headline'], 'main', context="headline"), 'headline.main'),
        abstract=_string(doc['abstract'], 'abstract'),
        media_count=len(multimedia),
        url=_string(doc['web_url'], 'web_url'),
        news_desk=_string(doc['news_desk'], 'news_desk'),
    )

# ============================================================================
# INCREMENTAL AGGREGATION
# ============================================================================

@dataclass
class CategoryStats:
    """Running average word count and the articles of one news desk."""
    avg_word_count: float = 0.0
    articles: List[Article] = field(default_factory=list)

    def add(self, article: Article):
        self.articles.append(article)
        num = len(self.articles)
        # Incremental form, no running sum kept
        self.avg_word_count = (self.avg_word_count * ((num - 1) / num)) + (article.word_count / num)


class AuthorTally:
    """
    Article count per author plus the current leader.

    The leader only changes when an author's count strictly exceeds the
    leader threshold, so on a tie the author who got there first stays on top.
    """

    def __init__(self):
        self.counts: Dict[str, int] = {}
        self.leader = ""
        self.leader_count = 0

    def add(self, full_name: str):
        self.counts[full_name] = self.counts.get(full_name, 0) + 1
        if self.leader_count < self.counts[full_name]:
            self.leader = full_name
            self.leader_count = self.counts[full_name]


@dataclass
class AggregateResult:
    """Terminal output of a run."""
    data: Dict[str, CategoryStats] = field(default_factory=dict)
    author_wrote_most: str = ""
    author_wrote_most_count: int = 0
    most_media_urls: List[str] = field(default_factory=list)
    most_media_count: int = 0

    def to_dict(self) -> Dict:
        return {
            "authorWroteMost": self.author_wrote_most,
            "authorWroteMostCount": self.author_wrote_most_count,
            "mostMediaArticleURL": list(self.most_media_urls),
            "mostMediaCount": self.most_media_count,
            "data": {
                desk: {
                    "avgWordCount": stats.avg_word_count,
                    "article": [article.to_dict() for article in stats.articles],
                }
                for desk, stats in self.data.items()
            },
        }


class Aggregator:
    """Folds normalized articles into an AggregateResult in place."""

    def __init__(self, result: Optional[AggregateResult] = None):
        self.result = result if result is not None else AggregateResult()
        self.tally = AuthorTally()

    def fold(self, article: Article):
        desk = self.result.data.get(article.news_desk)
        if desk is None:
            desk = self.result.data[article.news_desk] = CategoryStats()
        desk.add(article)
        self._update_authors(article)
        self._update_media(article)

    def fold_all(self, articles: List[Article]):
        for article in articles:
            self.fold(article)

    def _update_authors(self, article: Article):
        for full_name in article.authors:
            self.tally.add(full_name)
        self.result.author_wrote_most = self.tally.leader
        self.result.author_wrote_most_count = self.tally.leader_count

    def _update_media(self, article: Article):
        result = self.result
        if result.most_media_count < article.media_count:
            result.most_media_count = article.media_count
            result.most_media_urls = [article.url]
        elif result.most_media_count == article.media_count:
            result.most_media_urls.append(article.url)

# ============================================================================
# API REQUEST HANDLING
# ============================================================================

def fetch_json(url: str, config: Dict) -> Dict:
    """
    GET a URL and decode its JSON body.
    Connection errors, timeouts, 429 and 5xx responses are retried with
    exponential backoff; anything else, or running out of retries, raises
    TransportError.
    """
    timeout = get_config_value(config, 'api.timeout_seconds', DEFAULT_TIMEOUT_SECONDS)
    retries = get_config_value(config, 'api.max_retries', DEFAULT_MAX_RETRIES)
    backoff = get_config_value(config, 'api.retry_backoff_seconds', DEFAULT_RETRY_BACKOFF_SECONDS)
    last_error = None

    for attempt in range(retries + 1):
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as http_err:
            status_code = http_err.response.status_code if http_err.response is not None else None
            if status_code not in RETRYABLE_STATUS_CODES:
                raise TransportError(f"HTTP {status_code}") from http_err
            last_error = f"HTTP {status_code}"
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as req_err:
            last_error = type(req_err).__name__
        except requests.exceptions.RequestException as req_err:
            raise TransportError(str(req_err)) from req_err
        else:
            try:
                return response.json()
            except ValueError as e:
                raise TransportError("response body is not valid JSON") from e

        if attempt < retries:
            delay = backoff * (2 ** attempt)
            logger.warning(MSG_WARNING_RETRYING.format(
                error=last_error, delay=delay, attempt=attempt + 1, attempts=retries + 1))
            time.sleep(delay)

    raise TransportError(f"giving up after {retries + 1} attempts: {last_error}")

def parse_page(body: Dict):
    """
    Pull (hits, docs) out of a response body.
    Raises MalformedPageError when either is absent.
    """
    response = body.get("response") if isinstance(body, dict) else None
    if not isinstance(response, dict):
        raise MalformedPageError("body has no 'response' object")
    meta = response.get("meta")
    hits = meta.get("hits") if isinstance(meta, dict) else None
    if isinstance(hits, bool) or not isinstance(hits, int):
        raise MalformedPageError("response.meta.hits missing")
    docs = response.get("docs")
    if not isinstance(docs, list):
        raise MalformedPageError("response.docs missing")
    return hits, docs

# ============================================================================
# PAGINATION
# ============================================================================

@dataclass
class RunState:
    """Pagination state, owned by a single Pager."""
    total_hits: Optional[int] = None
    current_page: int = 0
    missing_pages: List[int] = field(default_factory=list)
    status: str = STATUS_NOT_STARTED

    def advance(self, status: str):
        """Move status forward; going backwards or leaving Done is an error."""
        if STATUS_ORDER.index(status) <= STATUS_ORDER.index(self.status):
            raise ValueError(f"cannot move run from {self.status} to {status}")
        self.status = status


class Pager:
    """
    Drives one page fetch per tick and folds each page into the aggregate.

    fetch is any callable taking a URL and returning the decoded JSON body,
    raising TransportError on failure.
    """

    def __init__(self, search: SearchConfig, fetch: Callable[[str], Dict],
                 aggregator: Optional[Aggregator] = None, metrics: Optional[MetricsTracker] = None):
        self.search = search
        self.fetch = fetch
        self.aggregator = aggregator if aggregator is not None else Aggregator()
        self.metrics = metrics if metrics is not None else MetricsTracker()
        self.state = RunState()
        self._fetch_in_flight = False

    @property
    def result(self) -> AggregateResult:
        return self.aggregator.result

    @property
    def done(self) -> bool:
        return self.state.status == STATUS_DONE

    def start(self):
        self.state.advance(STATUS_IN_PROGRESS)

    def finish(self):
        if not self.done:
            self.state.advance(STATUS_DONE)

    def fetch_page(self, page: int) -> Optional[int]:
        """
        Fetch and fold one page. Returns the reported hit count, or None when
        the page is recorded as missing.
        """
        if self.state.status != STATUS_IN_PROGRESS:
            raise RuntimeError(f"cannot fetch page {page} while run is {self.state.status}")

        url = self.search.page_url(page)
        logger.debug(MSG_DEBUG_FETCHING.format(url=self.search.redact(url)))
        start_time = time.time()
        try:
            body = self.fetch(url)
        except TransportError as e:
            self.metrics.record_api_call((time.time() - start_time) * 1000, success=False)
            logger.warning(MSG_WARNING_TRANSPORT.format(page=page, error=e))
            return self._mark_missing(page)
        self.metrics.record_api_call((time.time() - start_time) * 1000)

        # Normalize the whole page before folding so a bad record folds nothing
        try:
            hits, docs = parse_page(body)
            articles = [normalize_record(doc) for doc in docs]
        except MalformedRecordError as e:
            logger.warning(MSG_WARNING_MALFORMED_PAGE.format(page=page, error=e))
            return self._mark_missing(page)

        self.aggregator.fold_all(articles)
        self.metrics.record_page_fetched(len(articles))
        logger.info(MSG_INFO_GOT_PAGE.format(page=page))
        return hits

    def _mark_missing(self, page: int) -> None:
        logger.warning(MSG_WARNING_PAGE_MISSING.format(page=page))
        self.state.missing_pages.append(page)
        self.metrics.record_page_missing()
        return None

    def fetch_first_page(self) -> Optional[int]:
        """Fetch page 0 eagerly; its hit count decides how many ticks follow."""
        hits = self.fetch_page(0)
        self.state.total_hits = hits
        if hits is not None:
            pages = -(-hits // self.search.page_size)
            logger.info(MSG_INFO_TOTAL_HITS.format(hits=hits, pages=pages))
        return hits

    def tick(self) -> bool:
        """
        One scheduled step. Returns False once the run is Done and the
        schedule should stop.
        """
        if self.done:
            return False
        if self._fetch_in_flight:
            logger.warning(MSG_WARNING_TICK_SKIPPED.format(page=self.state.current_page + 1))
            return True

        self.state.current_page += 1
        total_hits = self.state.total_hits
        if total_hits is None or self.state.current_page * self.search.page_size >= total_hits:
            self.finish()
            return False

        self._fetch_in_flight = True
        try:
            self.fetch_page(self.state.current_page)
        finally:
            self._fetch_in_flight = False
        return True

# ============================================================================
# SCHEDULING
# ============================================================================

def format_wait_estimate(total_hits: int, search: SearchConfig) -> str:
    """Two-line rate-limit explanation with the estimated total wait."""
    seconds = total_hits * search.seconds_per_article
    return MSG_INFO_WAIT_RATE_LIMIT + "\n" + MSG_INFO_WAIT_ESTIMATE.format(seconds=seconds) + "\n"


class RunScheduler:
    """
    Runs a Pager end to end: page 0, then one tick per interval until the
    Pager reports Done, then the presentation handoff.

    sleep and clock are injectable so tests can drive it without waiting.
    """

    def __init__(self, pager: Pager, on_finish: Callable[[AggregateResult, List[int]], None],
                 sleep: Optional[Callable[[float], None]] = None,
                 clock: Optional[Callable[[], float]] = None,
                 on_wait_estimate: Optional[Callable[[str], None]] = None):
        self.pager = pager
        self.on_finish = on_finish
        self.sleep = sleep or (lambda seconds: time.sleep(seconds))
        self.clock = clock or (lambda: time.monotonic())
        self.on_wait_estimate = on_wait_estimate or _log_lines
        self.ticks = 0

    def begin(self) -> bool:
        """Start the run if it has never started. Returns True if this call ran it."""
        status = self.pager.state.status
        if status == STATUS_IN_PROGRESS:
            logger.info(MSG_INFO_RUN_IN_PROGRESS)
            return False
        if status == STATUS_DONE:
            logger.info(MSG_INFO_RUN_DONE)
            self._hand_off()
            return False

        self.pager.start()
        self._run()
        return True

    def _run(self):
        total_hits = self.pager.fetch_first_page()
        if total_hits is None:
            logger.warning(MSG_WARNING_HITS_UNKNOWN)
            self.pager.finish()
        else:
            self.on_wait_estimate(format_wait_estimate(total_hits, self.pager.search))

        interval = self.pager.search.interval_seconds
        next_tick = self.clock() + interval
        while not self.pager.done:
            delay = next_tick - self.clock()
            if delay > 0:
                self.sleep(delay)
            # Next tick is one interval after this one fires
            next_tick = self.clock() + interval
            self.ticks += 1
            if not self.pager.tick():
                break

        state = self.pager.state
        logger.info(MSG_INFO_RUN_COMPLETE.format(
            fetched=self.pager.metrics.metrics['pages_fetched'], missing=len(state.missing_pages)))
        self._hand_off()

    def _hand_off(self):
        self.on_finish(self.pager.result, list(self.pager.state.missing_pages))


def _log_lines(text: str):
    for line in text.rstrip("\n").split("\n"):
        logger.info(line)

# ============================================================================
# MODE SELECTION & REPORTING
# ============================================================================

def parse_mode_selection(raw) -> str:
    option = str(raw).strip()
    if option not in VALID_MODES:
        raise InvalidModeSelection(f"unknown option {option!r}")
    return option

def prompt_for_mode(input_func: Callable[[str], str] = input) -> str:
    """Ask until a valid option is given."""
    while True:
        try:
            return parse_mode_selection(input_func(MODE_PROMPT))
        except InvalidModeSelection:
            logger.info(MSG_INFO_INVALID_MODE)

def build_report_lines(result: AggregateResult, missing_pages: List[int], mode: str) -> List[str]:
    """Render the final aggregate as text lines for the selected mode."""
    lines = []
    if missing_pages:
        lines.append(MSG_INFO_MISSING_PAGES.format(pages=",".join(str(p) for p in missing_pages)))
    if mode in (MODE_MEDIA, MODE_BOTH):
        lines.append(MSG_INFO_MEDIA_LEADER)
        for url in result.most_media_urls:
            lines.append("--" + url)
        lines.append(MSG_INFO_MEDIA_COUNT.format(count=result.most_media_count))
    if mode in (MODE_AUTHOR, MODE_BOTH):
        lines.append(MSG_INFO_AUTHOR_LEADER.format(author=result.author_wrote_most))

    for desk, stats in result.data.items():
        lines.append(f"{DESK_BANNER}{desk}{DESK_BANNER}")
        lines.append(MSG_INFO_DESK_AVERAGE.format(avg=stats.avg_word_count))
        for article in stats.articles:
            lines.append(ARTICLE_SEPARATOR)
            lines.append("--------Date:" + article.date.strftime(DATE_FORMAT))
            lines.append("------Author:" + ",".join(article.authors))
            lines.append("--Word Count:" + str(article.word_count))
            lines.append("----Headline:" + article.headline)
            lines.append("----Abstract:" + article.abstract)
    return lines

def display_report(result: AggregateResult, missing_pages: List[int], mode: str):
    for line in build_report_lines(result, missing_pages, mode):
        logger.info(line)

def export_report(result: AggregateResult, missing_pages: List[int], file_path: str) -> bool:
    """Write the aggregate and missing pages to a JSON file."""
    try:
        payload = result.to_dict()
        payload["missingPages"] = list(missing_pages)
        write_json(file_path, payload)
        logger.info(MSG_INFO_REPORT_EXPORTED.format(path=file_path))
        return True
    except Exception as e:
        logger.warning(MSG_WARNING_REPORT_EXPORT_FAILED.format(error=e))
        return False

# ============================================================================
# MAIN EXECUTION
# ============================================================================

def main(input_func: Callable[[str], str] = input):
    """Run one search digest from config to report."""
    metrics = MetricsTracker()

    logger.info(MSG_INFO_STARTING)
    logger.info(f"{datetime.now().strftime(DATETIME_FORMAT)}\n")

    config = load_config()
    api_key = resolve_api_key(config)
    if not api_key:
        logger.warning(MSG_WARNING_NO_KEY_ENV)
        logger.info(MSG_INFO_SET_KEY)
        logger.info(MSG_INFO_GET_KEY + "\n")

    search = build_search_config(config, api_key)
    logger.info(MSG_INFO_DATE_RANGE.format(begin_date=search.begin_date, end_date=search.end_date))

    mode = None
    configured_mode = get_config_value(config, 'run.mode', None)
    if configured_mode is not None:
        try:
            mode = parse_mode_selection(configured_mode)
        except InvalidModeSelection:
            logger.info(MSG_INFO_INVALID_MODE)
    if mode is None:
        mode = prompt_for_mode(input_func)
    logger.info(MSG_INFO_MODE_SELECTED.format(mode=mode))

    pager = Pager(search, lambda url: fetch_json(url, config), metrics=metrics)
    scheduler = RunScheduler(
        pager,
        on_finish=lambda result, missing: display_report(result, missing, mode),
    )
    scheduler.begin()

    if get_config_value(config, 'report.export_to_json', DEFAULT_REPORT_EXPORT_TO_JSON):
        json_path = get_config_value(config, 'report.json_output_path', DEFAULT_REPORT_JSON_PATH)
        export_report(pager.result, pager.state.missing_pages, json_path)

    metrics.print_summary()

    if get_config_value(config, 'metrics.export_to_json', DEFAULT_METRICS_EXPORT_TO_JSON):
        json_path = get_config_value(config, 'metrics.json_output_path', DEFAULT_METRICS_JSON_PATH)
        metrics.export_to_json(json_path)

def run_cli():
    """Entry point wrapper that handles CLI execution and exit codes."""
    try:
        main()
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info(f"\n{MSG_INFO_INTERRUPTED}")
        sys.exit(1)
    except Exception as e:
        logger.critical(f"\n{MSG_FATAL_ERROR}: {MSG_ERROR_UNEXPECTED_MAIN}: {e}")
        logger.critical(traceback.format_exc())
        sys.exit(1)


if __name__ == "__main__":
    run_cli()
