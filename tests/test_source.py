"""Process list source, option file, CLI and startup tests"""

import pymysql
import pytest

import proccatch
from proccatch import (
    DEFAULT_FILE_PREFIX,
    PROCESSLIST_QUERY,
    CatchConfig,
    ConfigurationError,
    DataSourceError,
    MySQLConfig,
    ProcessListSource,
    build_config,
    connect,
    parse_args,
    read_mysql_config,
)


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def execute(self, sql):
        if self.connection.error:
            raise self.connection.error
        self.connection.executed.append(sql)

    def fetchall(self):
        return self.connection.rows


class FakeConnection:
    def __init__(self, rows=(), error=None):
        self.rows = list(rows)
        self.error = error
        self.executed = []
        self.pings = []
        self.open = True

    def ping(self, reconnect=True):
        self.pings.append(reconnect)

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.open = False


class TestProcessListSource:
    """information_schema.processlist adapter"""

    def test_rows_become_records(self):
        """Columns map onto SessionRecord fields in order"""
        connection = FakeConnection(rows=[
            (12, "app", "10.0.0.5:40000", "shop", "Query", 7, "Sending data", "SELECT 1"),
            (13, "batch", "10.0.0.6:40001", None, "Query", 0, None, None),
        ])

        records = ProcessListSource(connection)()

        assert connection.executed == [PROCESSLIST_QUERY]
        assert connection.pings == [True]
        assert [r.id for r in records] == [12, 13]
        assert records[0].database == "shop"
        assert records[0].elapsed_seconds == 7
        assert records[0].statement_text == "SELECT 1"
        assert records[1].database is None
        assert records[1].statement == ""

    def test_bytes_are_decoded(self):
        """Binary columns are decoded as UTF-8"""
        connection = FakeConnection(rows=[
            (1, b"app", b"h", b"db", b"Query", 0, b"init", "SELECT 'café'".encode("utf-8")),
        ])

        record = ProcessListSource(connection)()[0]

        assert record.user == "app"
        assert record.statement_text == "SELECT 'café'"

    def test_driver_error_becomes_data_source_error(self):
        """PyMySQL errors surface as DataSourceError"""
        error = pymysql.err.OperationalError(2013, "Lost connection to MySQL server")
        with pytest.raises(DataSourceError, match="Lost connection"):
            ProcessListSource(FakeConnection(error=error))()

    def test_query_shape(self):
        """Idle sessions are excluded and longest running come first"""
        assert "FROM information_schema.processlist" in PROCESSLIST_QUERY
        assert "WHERE command != 'Sleep'" in PROCESSLIST_QUERY
        assert PROCESSLIST_QUERY.endswith("ORDER BY TIME DESC")


class TestReadMySQLConfig:
    """~/.my.cnf style option files"""

    def test_reads_credentials(self, tmp_path):
        """user, password and host lines are read, sections ignored"""
        option_file = tmp_path / "my.cnf"
        option_file.write_text(
            "[client]\n"
            "user=capture\n"
            "  password=s3cr=t  \n"
            "host=db1.internal\n"
            "port=3307\n",
            encoding="utf-8",
        )

        config = read_mysql_config(option_file)

        assert config == MySQLConfig(user="capture", password="s3cr=t", host="db1.internal")

    def test_missing_file(self, tmp_path):
        """A missing file gives empty credentials"""
        assert read_mysql_config(tmp_path / "absent.cnf") == MySQLConfig()


class TestCommandLine:
    """argparse flags and config assembly"""

    def test_defaults(self):
        """No flags gives the documented defaults"""
        config = build_config(parse_args([]), MySQLConfig())

        assert config == CatchConfig(host="localhost", file_prefix=DEFAULT_FILE_PREFIX)

    def test_flags(self):
        """Short flags map onto config values"""
        args = parse_args(["--host", "db2", "-f", "replay", "-s", "0.5", "-q", "-d", "-v", "--no-color"])
        config = build_config(args, MySQLConfig(user="u", password="p", host="db1"))

        assert config.host == "db2"
        assert config.file_prefix == "replay"
        assert config.interval == 0.5
        assert config.queries_only and config.debug and config.verbose
        assert not config.colorize
        assert (config.user, config.password) == ("u", "p")

    def test_host_from_option_file(self):
        """Option file host is used when --host is absent"""
        config = build_config(parse_args([]), MySQLConfig(host="db1"))
        assert config.host == "db1"

    def test_negative_sleep_rejected(self):
        """A negative interval is a usage error"""
        with pytest.raises(SystemExit) as excinfo:
            parse_args(["-s", "-1"])
        assert excinfo.value.code == 2


class TestStartup:
    """connect() and main()"""

    def test_connect_failure(self, monkeypatch, console_output):
        """Connection errors are configuration errors"""
        def fail(**kwargs):
            raise pymysql.err.OperationalError(1045, "Access denied")

        monkeypatch.setattr(pymysql, "connect", fail)
        console_sink, _ = console_output

        with pytest.raises(ConfigurationError, match="Access denied"):
            connect(CatchConfig(host="db1"), console_sink)

    def test_connect_success(self, monkeypatch, console_output):
        """A working connection is announced on the console"""
        connection = FakeConnection()
        captured = {}

        def fake_connect(**kwargs):
            captured.update(kwargs)
            return connection

        monkeypatch.setattr(pymysql, "connect", fake_connect)
        console_sink, buffer = console_output

        assert connect(CatchConfig(host="db1", user="capture"), console_sink) is connection
        assert captured["host"] == "db1"
        assert captured["port"] == 3306
        assert captured["autocommit"] is True
        assert "Connected successfully to db1 ✓" in buffer.getvalue()

    def test_main_exits_on_configuration_error(self, monkeypatch, tmp_path, capsys):
        """Startup connection failures are fatal"""
        def fail(config, console_sink):
            raise ConfigurationError("Failed to connect to db1: Access denied")

        monkeypatch.setattr(proccatch, "setup_logger", lambda **kwargs: None)
        monkeypatch.setattr(proccatch, "connect", fail)

        with pytest.raises(SystemExit) as excinfo:
            proccatch.main(["--defaults-file", str(tmp_path / "absent.cnf")])

        assert excinfo.value.code == 1
        assert "Access denied" in capsys.readouterr().err

    def test_main_stops_on_interrupt(self, monkeypatch, tmp_path, capsys):
        """Ctrl-C stops the loop and closes the connection"""
        connection = FakeConnection()

        def interrupt(self, max_cycles=None):
            raise KeyboardInterrupt

        monkeypatch.setattr(proccatch, "setup_logger", lambda **kwargs: None)
        monkeypatch.setattr(proccatch, "connect", lambda config, console_sink: connection)
        monkeypatch.setattr(proccatch.PollDriver, "run", interrupt)

        proccatch.main(["--defaults-file", str(tmp_path / "absent.cnf"), "-f", str(tmp_path / "cap")])

        assert "Monitor stopped." in capsys.readouterr().out
        assert not connection.open
