"""Tests for raw log line parsing."""

from datetime import UTC, datetime

from loglens.services.log_parser import parse_log_line, parse_timestamp, sniff_level


class TestParseTimestamp:
    """Timestamp formats seen in log lines."""

    def test_apache_format(self):
        assert parse_timestamp("10/Oct/2000:13:55:36 -0700") == datetime(2000, 10, 10, 20, 55, 36, tzinfo=UTC)

    def test_iso_format(self):
        assert parse_timestamp("2024-03-01T12:00:00Z") == datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def test_log4j_comma_millis(self):
        assert parse_timestamp("2024-03-01 12:00:00,250") == datetime(2024, 3, 1, 12, 0, 0, 250000, tzinfo=UTC)

    def test_epoch_seconds_and_millis(self):
        expected = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
        assert parse_timestamp(1709294400) == expected
        assert parse_timestamp(1709294400000) == expected

    def test_unparsable(self):
        assert parse_timestamp("not a date at all") is None
        assert parse_timestamp("") is None


class TestSniffLevel:
    def test_most_severe_hint_wins(self):
        assert sniff_level("FATAL error while handling") == "FATAL"
        assert sniff_level("warning: disk at 90%") == "WARN"
        assert sniff_level("all good") == "INFO"


class TestParseLogLine:
    """Format detection."""

    def test_apache_common(self):
        line = '127.0.0.1 - frank [10/Oct/2000:13:55:36 -0700] "GET /apache_pb.gif HTTP/1.0" 200 2326'
        fields = parse_log_line(line)
        assert fields["host"] == "127.0.0.1"
        assert fields["http_method"] == "GET"
        assert fields["http_url"] == "/apache_pb.gif"
        assert fields["http_status"] == 200
        assert fields["level"] == "INFO"
        assert fields["metadata"]["format"] == "apache_common"

    def test_nginx_combined(self):
        line = (
            '10.0.0.5 - - [01/Mar/2024:12:00:00 +0000] "POST /api/pay HTTP/1.1" 502 157 '
            '"https://shop.example.com/" "curl/8.0"'
        )
        fields = parse_log_line(line)
        assert fields["http_status"] == 502
        assert fields["level"] == "ERROR"
        assert fields["metadata"]["user_agent"] == "curl/8.0"
        assert fields["timestamp"] == datetime(2024, 3, 1, 12, 0, tzinfo=UTC)

    def test_client_error_is_warning(self):
        line = '10.0.0.5 - - [01/Mar/2024:12:00:00 +0000] "GET /missing HTTP/1.1" 404 0 "-" "curl/8.0"'
        assert parse_log_line(line)["level"] == "WARN"

    def test_log4j_with_stack_trace(self):
        line = (
            "2024-03-01 12:00:00,123 [main] ERROR com.example.Billing - Charge failed\n"
            "java.lang.IllegalStateException: boom\n"
            "\tat com.example.Billing.charge(Billing.java:42)"
        )
        fields = parse_log_line(line)
        assert fields["level"] == "ERROR"
        assert fields["thread"] == "main"
        assert fields["logger"] == "com.example.Billing"
        assert fields["message"] == "Charge failed"
        assert fields["stack_trace"].startswith("java.lang.IllegalStateException")

    def test_syslog(self):
        fields = parse_log_line("Mar  1 12:00:00 web-01 sshd[4242]: error: authentication failure")
        assert fields["host"] == "web-01"
        assert fields["application"] == "sshd"
        assert fields["level"] == "ERROR"
        assert fields["metadata"]["pid"] == "4242"

    def test_json_object(self):
        fields = parse_log_line('{"message": "hello", "level": "debug"}')
        assert fields["message"] == "hello"
        assert fields["metadata"]["format"] == "json"

    def test_generic_line(self):
        fields = parse_log_line("something odd happened\n")
        assert fields == {
            "level": "INFO",
            "message": "something odd happened",
            "metadata": {"format": "generic"},
        }
