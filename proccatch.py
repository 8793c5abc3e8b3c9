#!/usr/bin/env python3
"""
MySQL/MariaDB Process List Catcher
Version: 1.0.0

Polls information_schema.processlist and appends every interesting session
to a daily text file while echoing a colorized copy to the terminal. Meant
for capturing representative production traffic, e.g. to replay it against
an upgraded server.

Features:
- Daily output files (<prefix>-YYYY-MM-DD.txt), append-only, rolled at midnight
- Statement category (SELECT/INSERT/UPDATE/DELETE/DDL) drives console colors
- Queries-only mode (-q) skips sessions without a DML/DDL statement
- Debug mode (-d) counts query-like sessions and prints stats every 5 seconds
- Verbose mode (-v) prints a one-line summary per captured session
- Credentials read from ~/.my.cnf (user=, password=, host=)
"""

import argparse
import logging
import sys
import time
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

import pymysql
from rich.console import Console
from rich.text import Text

VERSION = "1.0.0"

CHECK_MARK = "✓"
DEFAULT_FILE_PREFIX = "load_test"
DEFAULT_DEBUG_LOG = "/tmp/proccatch_debug.txt"
DEFAULT_PORT = 3306
STATS_WINDOW = timedelta(seconds=5)
PREVIEW_LENGTH = 100

# Both markers must stay literally inside PROCESSLIST_QUERY, the self-exclusion
# check looks for them in the INFO column of our own session.
PROCESSLIST_TABLE = "FROM information_schema.processlist"
SLEEP_EXCLUSION = "WHERE command != 'Sleep'"
PROCESSLIST_QUERY = (
    "SELECT ID, USER, HOST, DB, COMMAND, TIME, STATE, INFO "
    f"{PROCESSLIST_TABLE} "
    f"{SLEEP_EXCLUSION} "
    "AND (COMMAND = 'Query' "
    "OR INFO IS NOT NULL "
    "OR STATE NOT IN ('', 'init', 'after create', 'CONNECTING') "
    "OR TIME > 0) "
    "ORDER BY TIME DESC"
)

logger = logging.getLogger("proccatch")


class CatchError(Exception):
    """Base class for all proccatch errors"""


class DataSourceError(CatchError):
    """The process list query failed; the current cycle is dropped"""


class SinkError(CatchError):
    """The output file could not be opened or written"""


class ConfigurationError(CatchError):
    """Connection or credential problem, fatal at startup"""


def setup_logger(name: str = "proccatch", log_file: Optional[str] = None,
                 level: int = logging.INFO) -> logging.Logger:
    log = logging.getLogger(name)
    log.setLevel(level)

    if not log.handlers:
        formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(message)s')

        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        log.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            log.addHandler(file_handler)

    return log


@dataclass(frozen=True)
class SessionRecord:
    __slots__ = ('id', 'user', 'host', 'database', 'command',
                 'elapsed_seconds', 'state', 'statement_text')
    id: int
    user: str
    host: str
    database: Optional[str]
    command: str
    elapsed_seconds: int
    state: Optional[str]
    statement_text: Optional[str]

    @property
    def statement(self) -> str:
        """Statement text, with an absent statement read as empty"""
        return self.statement_text or ""


class Category(Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    DDL = "ddl"
    UNKNOWN = "unknown"


class QueryClassifier:
    """Keyword heuristics over raw statement text.

    Keywords are matched as plain substrings, so an identifier or string
    literal containing one (a column named ``updated_at``, a comment saying
    "drop") counts as that keyword. The first category in CATEGORY_KEYWORDS
    that matches wins.
    """

    CATEGORY_KEYWORDS = (
        (Category.SELECT, ('select',)),
        (Category.INSERT, ('insert',)),
        (Category.UPDATE, ('update',)),
        (Category.DELETE, ('delete',)),
        (Category.DDL, ('create', 'alter', 'drop')),
    )
    QUERY_KEYWORDS = ('select', 'insert', 'update', 'delete', 'create', 'alter', 'drop')
    TRACKED_MARKERS = ('select', 'count(', 'limit')

    @staticmethod
    def classify(text: Optional[str]) -> Category:
        lowered = (text or "").lower()
        if not lowered:
            return Category.UNKNOWN

        for category, keywords in QueryClassifier.CATEGORY_KEYWORDS:
            if any(keyword in lowered for keyword in keywords):
                return category

        return Category.UNKNOWN

    @staticmethod
    def is_query(text: Optional[str]) -> bool:
        """True if the statement mentions any DML/DDL keyword"""
        lowered = (text or "").lower()
        return any(keyword in lowered for keyword in QueryClassifier.QUERY_KEYWORDS)

    @staticmethod
    def is_monitoring_query(text: Optional[str]) -> bool:
        """True for our own process list query (case-sensitive markers)"""
        text = text or ""
        return PROCESSLIST_TABLE in text and SLEEP_EXCLUSION in text

    @staticmethod
    def is_tracked_query(text: Optional[str]) -> bool:
        """Looser test used only for the debug query counter"""
        lowered = (text or "").lower()
        return any(marker in lowered for marker in QueryClassifier.TRACKED_MARKERS)

    @staticmethod
    def query_type(text: Optional[str]) -> str:
        lowered = (text or "").lower()
        if 'select' in lowered:
            return 'SELECT'
        elif 'show' in lowered:
            return 'SHOW'
        return 'unknown'


class SessionFilter:
    """Decides which sessions get written out"""

    def __init__(self, queries_only=False, debug=False):
        self.queries_only = queries_only
        self.debug = debug

    def accepts(self, record: SessionRecord) -> bool:
        text = record.statement

        # Never log our own polling query unless debugging the tool itself
        if not self.debug and QueryClassifier.is_monitoring_query(text):
            return False

        if self.queries_only and not QueryClassifier.is_query(text):
            return False

        return True


class Emphasis(Enum):
    NEUTRAL = "neutral"
    ALERT = "alert"
    INFO = "info"
    HEALTHY = "healthy"
    STANDARD_QUERY = "standard-query"
    STRONG_AGGREGATE = "strong-aggregate"
    STRONG_BOUNDED = "strong-bounded"
    STRONG_SUCCESS = "strong-success"
    STRONG_WARNING = "strong-warning"
    STRONG_DANGER = "strong-danger"
    STRONG_STRUCTURAL = "strong-structural"


CATEGORY_EMPHASIS = {
    Category.INSERT: Emphasis.STRONG_SUCCESS,
    Category.UPDATE: Emphasis.STRONG_WARNING,
    Category.DELETE: Emphasis.STRONG_DANGER,
    Category.DDL: Emphasis.STRONG_STRUCTURAL,
}

# Presentation side: emphasis -> rich style. NEUTRAL falls back to the
# per-field default below.
EMPHASIS_STYLES = {
    Emphasis.ALERT: "red",
    Emphasis.INFO: "blue",
    Emphasis.HEALTHY: "green",
    Emphasis.STANDARD_QUERY: "bold cyan",
    Emphasis.STRONG_AGGREGATE: "bold magenta",
    Emphasis.STRONG_BOUNDED: "bold green",
    Emphasis.STRONG_SUCCESS: "bold green",
    Emphasis.STRONG_WARNING: "bold yellow",
    Emphasis.STRONG_DANGER: "bold red",
    Emphasis.STRONG_STRUCTURAL: "bold magenta",
}
STATE_DEFAULT_STYLE = "yellow"
INFO_DEFAULT_STYLE = "cyan"


def resolve_emphasis(record: SessionRecord) -> tuple:
    """Return (state emphasis, statement emphasis); first matching rule wins"""
    state = record.state or ""

    if state == "login":
        return Emphasis.ALERT, Emphasis.NEUTRAL
    if state == "Receiving from client":
        return Emphasis.INFO, Emphasis.NEUTRAL

    category = QueryClassifier.classify(record.statement)
    if category is Category.SELECT:
        lowered = record.statement.lower()
        if "count(*)" in lowered:
            info = Emphasis.STRONG_AGGREGATE
        elif "limit" in lowered:
            info = Emphasis.STRONG_BOUNDED
        else:
            info = Emphasis.STANDARD_QUERY
        return Emphasis.HEALTHY, info

    return Emphasis.NEUTRAL, CATEGORY_EMPHASIS.get(category, Emphasis.NEUTRAL)


@dataclass
class DisplayRecord:
    timestamp: str
    record: SessionRecord
    state_emphasis: Emphasis = Emphasis.NEUTRAL
    info_emphasis: Emphasis = Emphasis.NEUTRAL


class Renderer:
    """Formats sessions as fixed multi-line records.

    ``plain()`` never carries styling and is what goes to the file.
    ``styled()`` has exactly the same characters, with emphasis styles
    attached only when ``colorize`` is on.
    """

    BANNER = "*************************** Process Info @ {} ***************************"
    LABEL_WIDTH = 9

    def __init__(self, colorize=True, clock: Callable[[], datetime] = datetime.now):
        self.colorize = colorize
        self.clock = clock

    def render(self, record: SessionRecord) -> DisplayRecord:
        state_emphasis, info_emphasis = resolve_emphasis(record)
        return DisplayRecord(
            timestamp=self.clock().strftime('%Y-%m-%d %H:%M:%S'),
            record=record,
            state_emphasis=state_emphasis,
            info_emphasis=info_emphasis,
        )

    def _fields(self, display):
        r = display.record
        return [
            ("ID", str(r.id)),
            ("USER", r.user),
            ("HOST", r.host),
            ("DB", r.database or ""),
            ("COMMAND", r.command),
            ("TIME", str(r.elapsed_seconds)),
            ("STATE", r.state or ""),
            ("INFO", r.statement),
        ]

    def _label(self, label):
        return f"{label:>{self.LABEL_WIDTH}}: "

    def _style(self, emphasis, default):
        if not self.colorize:
            return None
        return EMPHASIS_STYLES.get(emphasis, default)

    def plain(self, display: DisplayRecord) -> str:
        lines = [self.BANNER.format(display.timestamp)]
        for label, value in self._fields(display):
            lines.append(self._label(label) + value)
        return "\n".join(lines) + "\n\n"

    def styled(self, display: DisplayRecord) -> Text:
        styles = {
            "STATE": self._style(display.state_emphasis, STATE_DEFAULT_STYLE),
            "INFO": self._style(display.info_emphasis, INFO_DEFAULT_STYLE),
        }

        text = Text(self.BANNER.format(display.timestamp) + "\n", end="")
        for label, value in self._fields(display):
            text.append(self._label(label))
            text.append(value, style=styles.get(label))
            text.append("\n")
        text.append("\n")
        return text


class DailyLogFile:
    """Append-only output file, one per calendar day"""

    def __init__(self, prefix=DEFAULT_FILE_PREFIX):
        self.prefix = prefix or DEFAULT_FILE_PREFIX
        self.path = None
        self._handle = None

    def filename_for(self, day: datetime) -> str:
        return f"{self.prefix}-{day.strftime('%Y-%m-%d')}.txt"

    @property
    def is_open(self):
        return self._handle is not None

    def open(self, now: datetime):
        self.path = Path(self.filename_for(now))
        try:
            self._handle = open(self.path, 'a', encoding='utf-8')
        except OSError as e:
            self._handle = None
            raise SinkError(f"cannot open {self.path}: {e}") from e

    def write(self, text: str):
        if self._handle is None:
            raise SinkError("output file is not open")
        try:
            self._handle.write(text)
        except (OSError, ValueError) as e:
            raise SinkError(f"cannot write to {self.path}: {e}") from e

    def close(self):
        """Flush buffered records and close the file"""
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            handle.close()
        except OSError as e:
            raise SinkError(f"cannot flush {self.path}: {e}") from e


class ConsoleSink:
    """Unbuffered terminal output through rich"""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(highlight=False)

    def write(self, renderable):
        self.console.print(renderable, end="", soft_wrap=True, highlight=False)
        self.console.file.flush()

    def line(self, message: str, style: Optional[str] = None):
        self.console.print(message, style=style, soft_wrap=True, markup=False,
                           highlight=False, emoji=False)
        self.console.file.flush()


class SinkFanout:
    """Sends the plain rendering to the file and the styled one to the console"""

    def __init__(self, renderer: Renderer, log_file: DailyLogFile, console_sink: ConsoleSink):
        self.renderer = renderer
        self.log_file = log_file
        self.console_sink = console_sink

    def emit(self, record: SessionRecord) -> DisplayRecord:
        display = self.renderer.render(record)

        if self.log_file.is_open:
            try:
                self.log_file.write(self.renderer.plain(display))
            except SinkError as e:
                logger.error("Error writing to file: %s", e)

        self.console_sink.write(self.renderer.styled(display))
        return display


@dataclass
class RollingStats:
    """Query-like sessions seen since the last debug report"""
    last_report: datetime
    count: int = 0
    window: timedelta = STATS_WINDOW

    def record(self) -> int:
        self.count += 1
        return self.count

    def report_due(self, now: datetime) -> bool:
        return now - self.last_report > self.window

    def reset(self, now: datetime) -> int:
        captured = self.count
        self.count = 0
        self.last_report = now
        return captured


@dataclass
class CatchConfig:
    host: str = "localhost"
    port: int = DEFAULT_PORT
    user: str = ""
    password: str = ""
    file_prefix: str = DEFAULT_FILE_PREFIX
    interval: float = 1.0
    queries_only: bool = False
    debug: bool = False
    verbose: bool = False
    colorize: bool = True
    debug_log: str = DEFAULT_DEBUG_LOG


class DriverState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    PROCESSING = "processing"
    SLEEPING = "sleeping"


class PollDriver:
    """Runs poll cycles: fetch, filter, render, write, sleep.

    Cycles never overlap and nothing inside a cycle is fatal. A failed fetch
    drops the cycle; a failed file open or write only skips the file side,
    the console still gets every record.
    """

    def __init__(self, source: Callable[[], Sequence[SessionRecord]], config: CatchConfig,
                 console_sink: Optional[ConsoleSink] = None, log_file=None,
                 clock: Callable[[], datetime] = datetime.now, sleep=time.sleep):
        self.source = source
        self.config = config
        self.clock = clock
        self.sleep = sleep
        self.console_sink = console_sink or ConsoleSink()
        self.log_file = log_file if log_file is not None else DailyLogFile(config.file_prefix)

        self.session_filter = SessionFilter(config.queries_only, config.debug)
        self.renderer = Renderer(config.colorize, clock)
        self.fanout = SinkFanout(self.renderer, self.log_file, self.console_sink)
        self.stats = RollingStats(last_report=clock())

        self.state = DriverState.IDLE
        self.cycles = 0
        self._current_path = None

    def run(self, max_cycles: Optional[int] = None):
        while max_cycles is None or self.cycles < max_cycles:
            self.run_cycle()
            self.sleep(self.config.interval)
        self.state = DriverState.IDLE

    def run_cycle(self) -> int:
        """Run one poll cycle and return how many records were emitted"""
        self.cycles += 1
        self.state = DriverState.POLLING

        try:
            batch = self.source()
        except DataSourceError as e:
            logger.error("Error: %s", e)
            self.state = DriverState.SLEEPING
            return 0

        logger.debug("Cycle %d: %d sessions", self.cycles, len(batch))

        self.state = DriverState.PROCESSING
        emitted = self._process(batch)

        self.state = DriverState.SLEEPING
        return emitted

    def _process(self, batch):
        self._open_log_file()

        emitted = 0
        try:
            for record in batch:
                if self._handle(record):
                    emitted += 1
        finally:
            try:
                self.log_file.close()
            except SinkError as e:
                logger.error("Error closing output file: %s", e)

        now = self.clock()
        if self.config.debug and self.stats.report_due(now):
            captured = self.stats.reset(now)
            window = int(self.stats.window.total_seconds())
            self.console_sink.line(f"Stats: Captured {captured} queries in last {window} seconds")

        return emitted

    def _open_log_file(self):
        try:
            self.log_file.open(self.clock())
        except SinkError as e:
            logger.error("Error opening output file: %s", e)
            return

        if self.log_file.path != self._current_path:
            logger.info("Writing to %s", self.log_file.path)
            self._current_path = self.log_file.path

    def _handle(self, record: SessionRecord) -> bool:
        if not self.session_filter.accepts(record):
            return False

        text = record.statement
        state = record.state or ""

        if self.config.verbose:
            self.console_sink.line(
                f"Debug: Found {QueryClassifier.query_type(text)} query - "
                f"State: {state}, Time: {record.elapsed_seconds}, "
                f"Info: {text[:PREVIEW_LENGTH]}..."
            )

        if self.config.debug and QueryClassifier.is_tracked_query(text):
            count = self.stats.record()
            self.console_sink.line(
                f"Debug: Query #{count} detected: {text[:PREVIEW_LENGTH]}...\n"
                f"State: {state}, Time: {record.elapsed_seconds}\n"
            )

        self.fanout.emit(record)
        return True


def _as_text(value):
    if isinstance(value, (bytes, bytearray)):
        return value.decode('utf-8', errors='replace')
    return value


class ProcessListSource:
    """Fetches active sessions from information_schema.processlist"""

    def __init__(self, connection):
        self.connection = connection

    def __call__(self) -> list:
        try:
            self.connection.ping(reconnect=True)
            with self.connection.cursor() as cursor:
                cursor.execute(PROCESSLIST_QUERY)
                rows = cursor.fetchall()
        except pymysql.MySQLError as e:
            raise DataSourceError(str(e)) from e

        return [self._to_record(row) for row in rows]

    @staticmethod
    def _to_record(row) -> SessionRecord:
        session_id, user, host, database, command, elapsed, state, info = row
        return SessionRecord(
            id=int(session_id),
            user=_as_text(user) or "",
            host=_as_text(host) or "",
            database=_as_text(database),
            command=_as_text(command) or "",
            elapsed_seconds=int(elapsed or 0),
            state=_as_text(state),
            statement_text=_as_text(info),
        )


@dataclass
class MySQLConfig:
    user: str = ""
    password: str = ""
    host: str = ""


def read_mysql_config(path=None) -> MySQLConfig:
    """Read user/password/host lines from a MySQL option file.

    Section headers are ignored. A missing or unreadable file gives an
    empty config.
    """
    config = MySQLConfig()
    try:
        path = Path(path) if path else Path.home() / '.my.cnf'
        content = path.read_text(encoding='utf-8')
    except (OSError, RuntimeError):
        return config

    for line in content.splitlines():
        line = line.strip()
        if line.startswith('user='):
            config.user = line[len('user='):]
        elif line.startswith('password='):
            config.password = line[len('password='):]
        elif line.startswith('host='):
            config.host = line[len('host='):]

    return config


def connect(config: CatchConfig, console_sink: ConsoleSink):
    try:
        connection = pymysql.connect(
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            charset='utf8mb4',
            autocommit=True,
            connect_timeout=10,
        )
        connection.ping(reconnect=False)
    except pymysql.MySQLError as e:
        raise ConfigurationError(f"Failed to connect to {config.host}: {e}") from e

    console_sink.line(f"Connected successfully to {config.host} {CHECK_MARK}", style="green")
    return connection


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description=f'MySQL/MariaDB Process List Catcher v{VERSION}'
    )
    parser.add_argument('--host', default='',
                       help='MySQL host address (default: host= from option file, else localhost)')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT,
                       help=f'MySQL port (default: {DEFAULT_PORT})')
    parser.add_argument('-f', '--file', default='',
                       help=f'Output file name prefix, without date (default: {DEFAULT_FILE_PREFIX})')
    parser.add_argument('-s', '--sleep', type=float, default=1.0,
                       help='Seconds to sleep between polls (default: 1.0)')
    parser.add_argument('-q', '--queries-only', action='store_true',
                       help='Show only sessions running DML/DDL statements')
    parser.add_argument('-d', '--debug', action='store_true',
                       help='Debug mode: include own polling query, count queries, print stats')
    parser.add_argument('-v', '--verbose', action='store_true',
                       help='Verbose debug mode')
    parser.add_argument('--no-color', action='store_true',
                       help='Disable terminal colors')
    parser.add_argument('--defaults-file', default=None,
                       help='MySQL option file with credentials (default: ~/.my.cnf)')
    parser.add_argument('--debug-log', default=DEFAULT_DEBUG_LOG,
                       help=f'Debug log file used with --debug (default: {DEFAULT_DEBUG_LOG})')
    parser.add_argument('--version', action='version', version=f'%(prog)s {VERSION}')

    args = parser.parse_args(argv)
    if args.sleep < 0:
        parser.error('--sleep must not be negative')
    return args


def build_config(args, mysql_config: MySQLConfig) -> CatchConfig:
    return CatchConfig(
        host=args.host or mysql_config.host or "localhost",
        port=args.port,
        user=mysql_config.user,
        password=mysql_config.password,
        file_prefix=args.file or DEFAULT_FILE_PREFIX,
        interval=args.sleep,
        queries_only=args.queries_only,
        debug=args.debug,
        verbose=args.verbose,
        colorize=not args.no_color,
        debug_log=args.debug_log,
    )


def main(argv=None):
    args = parse_args(argv)
    config = build_config(args, read_mysql_config(args.defaults_file))

    setup_logger(
        log_file=config.debug_log if config.debug else None,
        level=logging.DEBUG if config.debug else logging.INFO,
    )

    console_sink = ConsoleSink(Console(highlight=False, no_color=not config.colorize))

    try:
        connection = connect(config, console_sink)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    driver = PollDriver(ProcessListSource(connection), config, console_sink)

    try:
        driver.run()
    except KeyboardInterrupt:
        print("\nMonitor stopped.")
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        traceback.print_exc()
        sys.exit(1)
    finally:
        if connection.open:
            connection.close()


if __name__ == '__main__':
    main()
