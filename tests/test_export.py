import pytest
import requests

from quest_sensor_logger.errors import UploadError
from quest_sensor_logger.export import (
    CSV_HEADER,
    PresignedUploader,
    export_csv,
    format_row,
    render_csv,
)
from quest_sensor_logger.store import SampleRecord


def make_record(timestamp=1_700_000_000_000, **overrides):
    values = dict(
        timestamp=timestamp,
        temperature=2150,
        humidity=0,
        latitude=418827000,
        longitude=-876233000,
        altitude=18125,
        accuracy=460,
        speed=150,
    )
    values.update(overrides)
    return SampleRecord(**values)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, json_error=None):
        self.status_code = status_code
        self._payload = payload
        self._json_error = json_error

    @property
    def ok(self):
        return self.status_code < 400

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if self._json_error is not None:
            raise self._json_error
        return self._payload


class FakeSession:
    """Records calls and answers with canned responses."""

    def __init__(self, post_response=None, put_response=None, put_error=None):
        self.post_response = post_response or FakeResponse(
            payload={"uploadUrl": "https://upload.example/put", "publicUrl": "https://cdn.example/x.csv"}
        )
        self.put_response = put_response or FakeResponse()
        self.put_error = put_error
        self.posts = []
        self.puts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        return self.post_response

    def put(self, url, data=None, headers=None, timeout=None):
        self.puts.append((url, data, headers, timeout))
        if self.put_error is not None:
            raise self.put_error
        return self.put_response


class TestFormatRow:
    def test_converts_fixed_point_back_to_units(self):
        fields = format_row(make_record(), 1, "JOB").split(",")

        assert fields[0] == "1"
        assert fields[1] == "JOB"
        assert fields[2] == "1700000000000"
        assert fields[5] == "21.50"
        assert fields[6] == "0.0"
        assert fields[7] == "41.882700"
        assert fields[8] == "-87.623300"
        assert fields[9] == "181.25"
        assert fields[10] == "4.60"

    def test_speed_is_reported_in_mph(self):
        fields = format_row(make_record(speed=1000), 1, "").split(",")
        assert fields[11] == "22.37"

    def test_missing_optional_fields_render_as_zero(self):
        fields = format_row(make_record(altitude=None, accuracy=None, speed=None), None, "")

        assert fields.split(",")[0] == ""
        assert fields.endswith(",0.00,0.00,0.00")

    def test_local_date_has_no_leading_zeros(self):
        fields = format_row(make_record(), 1, "").split(",")
        month, day, year = fields[3].split("/")
        assert not month.startswith("0") and not day.startswith("0")
        assert len(year) == 4
        assert len(fields[4].split(":")) == 3


class TestRenderCsv:
    def test_header_and_numbering(self):
        text = render_csv([make_record(1000), make_record(2000)], "JOB")
        lines = text.splitlines()

        assert lines[0] == CSV_HEADER
        assert [line.split(",")[0] for line in lines[1:]] == ["1", "2"]
        assert all(line.split(",")[1] == "JOB" for line in lines[1:])
        assert text.endswith("\n")

    def test_stored_columns_take_precedence(self):
        text = render_csv([make_record(jobcode="OLD", rownumber=7)], "NEW")
        row = text.splitlines()[1].split(",")
        assert row[:2] == ["7", "OLD"]

    def test_empty(self):
        assert render_csv([]) == CSV_HEADER + "\n"


class TestExportCsv:
    def test_writes_file(self, tmp_path):
        path = tmp_path / "out" / "samples.csv"

        count = export_csv([make_record(1000), make_record(2000)], path, "J")

        assert count == 2
        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 3
        assert lines[0] == CSV_HEADER


class TestPresignedUploader:
    def test_upload_posts_then_puts(self):
        session = FakeSession()
        uploader = PresignedUploader("https://presign.example", "bucket-a", 5.0, session=session)

        url = uploader.upload("quest_phone.csv", "a,b\n")

        assert url == "https://cdn.example/x.csv"
        assert session.posts == [
            ("https://presign.example", {"filename": "quest_phone.csv", "bucket": "bucket-a"}, 5.0)
        ]
        put_url, data, headers, timeout = session.puts[0]
        assert put_url == "https://upload.example/put"
        assert data == b"a,b\n"
        assert headers == {"Content-Type": "text/csv"}
        assert timeout == 5.0

    def test_presign_http_error(self):
        session = FakeSession(post_response=FakeResponse(status_code=500))
        uploader = PresignedUploader("https://presign.example", session=session)

        with pytest.raises(UploadError):
            uploader.upload("x.csv", "")
        assert session.puts == []

    def test_presign_invalid_json(self):
        session = FakeSession(post_response=FakeResponse(json_error=ValueError("bad json")))
        uploader = PresignedUploader("https://presign.example", session=session)

        with pytest.raises(UploadError):
            uploader.upload("x.csv", "")

    def test_presign_without_upload_url(self):
        session = FakeSession(post_response=FakeResponse(payload={"publicUrl": "p"}))
        uploader = PresignedUploader("https://presign.example", session=session)

        with pytest.raises(UploadError, match="uploadUrl"):
            uploader.upload("x.csv", "")

    def test_put_rejected(self):
        session = FakeSession(put_response=FakeResponse(status_code=403))
        uploader = PresignedUploader("https://presign.example", session=session)

        with pytest.raises(UploadError, match="403"):
            uploader.upload("x.csv", "")

    def test_put_connection_error(self):
        session = FakeSession(put_error=requests.ConnectionError("reset"))
        uploader = PresignedUploader("https://presign.example", session=session)

        with pytest.raises(UploadError):
            uploader.upload("x.csv", "")
