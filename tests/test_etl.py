"""Tests for the ingestion routines."""

import csv
from datetime import date, timedelta

import pytest
from conftest import ArchiveStub, make_record

from openmeteo_client import (
    ArchiveRequestError,
    ChunkedArchiveFetcher,
    DailyObservation,
    OpenMeteoArchiveClient,
    OpenMeteoClientConfig,
)
from temperature_etl import TemperatureETL, build_records, subtract_years


def make_etl(database, stub, **config) -> TemperatureETL:
    config.setdefault("request_delay", 0.0)
    client = OpenMeteoArchiveClient(OpenMeteoClientConfig(**config), session=stub)
    return TemperatureETL(database, ChunkedArchiveFetcher(client))


class TestHelpers:
    """Test cases for the record helpers."""

    @pytest.mark.parametrize(
        "datum, years, expected",
        [
            (date(2025, 10, 19), 10, date(2015, 10, 19)),
            (date(2024, 2, 29), 1, date(2023, 2, 28)),
            (date(2024, 2, 29), 4, date(2020, 2, 29)),
        ],
    )
    def test_subtract_years(self, datum, years, expected):
        assert subtract_years(datum, years) == expected

    def test_build_records(self):
        observations = [
            DailyObservation(date(2024, 1, i), i + 5.0, i - 5.0, float(i))
            for i in range(1, 9)
        ]

        frame = build_records(observations)

        assert list(frame.columns) == [
            "date",
            "temp_high",
            "temp_low",
            "temp_avg",
            "temp_avg7",
            "source",
        ]
        assert frame["temp_avg7"].tolist() == pytest.approx(
            [1.0, 1.5, 2.0, 2.5, 3.0, 3.5, 4.0, 5.0]
        )
        assert set(frame["source"]) == {"Open-Meteo"}

    def test_build_records_missing_mean(self):
        """A missing mean is left out of the neighbouring averages."""
        observations = [
            DailyObservation(date(2024, 1, 1), 9.0, 1.0, 4.0),
            DailyObservation(date(2024, 1, 2), 9.0, 1.0, None),
            DailyObservation(date(2024, 1, 3), 9.0, 1.0, 6.0),
        ]

        frame = build_records(observations)

        assert frame["temp_avg7"].tolist() == pytest.approx([4.0, 4.0, 5.0])

    def test_build_records_empty(self):
        assert build_records([]).empty


class TestUpdateLatest:
    """Test cases for TemperatureETL.update_latest."""

    def test_empty_store_starts_at_epoch(self, database):
        stub = ArchiveStub()
        etl = make_etl(database, stub, epoch_start_date="2024-01-01")

        count = etl.update_latest(today=date(2024, 1, 10))

        rows = database.get_table()
        assert count == 10
        assert stub.requested_ranges == [("2024-01-01", "2024-01-10")]
        assert rows[0].temp_avg7 == pytest.approx(1.0)
        assert rows[2].temp_avg7 == pytest.approx(2.0)
        assert rows[-1].temp_avg7 == pytest.approx(7.0)
        assert rows[-1].temp_high == pytest.approx(15.0)
        assert rows[-1].temp_low == pytest.approx(5.0)

    def test_uses_stored_lookback_context(self, database):
        database.upsert_records(
            [
                make_record(date(2024, 1, 1) + timedelta(days=i), temp_avg=10.0)
                for i in range(7)
            ]
        )
        stub = ArchiveStub(values={date(2024, 1, 8): 17.0})
        etl = make_etl(database, stub)

        count = etl.update_latest(today=date(2024, 1, 8))

        rows = database.get_table()
        assert count == 1
        assert stub.requested_ranges == [("2024-01-08", "2024-01-08")]
        assert rows[-1].date == date(2024, 1, 8)
        assert rows[-1].temp_avg7 == pytest.approx((6 * 10.0 + 17.0) / 7)

    def test_context_days_are_not_rewritten(self, database):
        database.upsert_records(
            [make_record(date(2024, 1, 1), temp_avg=10.0, temp_avg7=-1.0)]
        )
        etl = make_etl(database, ArchiveStub())

        etl.update_latest(today=date(2024, 1, 3))

        assert database.get_table()[0].temp_avg7 == pytest.approx(-1.0)

    def test_already_up_to_date(self, database):
        database.upsert_records([make_record(date(2024, 1, 10))])
        stub = ArchiveStub()
        etl = make_etl(database, stub)

        assert etl.update_latest(today=date(2024, 1, 10)) == 0
        assert stub.calls == []

    def test_rerun_adds_nothing(self, database):
        stub = ArchiveStub()
        etl = make_etl(database, stub, epoch_start_date="2024-01-01")

        etl.update_latest(today=date(2024, 1, 10))
        assert etl.update_latest(today=date(2024, 1, 10)) == 0

        assert len(database.get_table()) == 10
        assert len(stub.calls) == 1

    def test_incomplete_days_are_skipped(self, database):
        stub = ArchiveStub(values={date(2024, 1, 3): None})
        etl = make_etl(database, stub, epoch_start_date="2024-01-01")

        count = etl.update_latest(today=date(2024, 1, 3))

        assert count == 2
        assert database.get_latest_date() == date(2024, 1, 2)

    def test_failing_chunk_writes_nothing(self, database):
        stub = ArchiveStub(failing_starts={date(2024, 1, 11)})
        etl = make_etl(database, stub, epoch_start_date="2024-01-01", chunk_days=10)

        with pytest.raises(ArchiveRequestError):
            etl.update_latest(today=date(2024, 1, 25))

        assert database.get_table() == []

    def test_requires_fetcher(self, database):
        with pytest.raises(RuntimeError):
            TemperatureETL(database).update_latest()


class TestBackfill:
    """Test cases for TemperatureETL.backfill."""

    def test_backfill_window(self, database):
        stub = ArchiveStub()
        etl = make_etl(database, stub, lookback_years=1)

        count = etl.backfill(today=date(2024, 3, 1))

        assert count == (date(2024, 3, 1) - date(2023, 3, 1)).days + 1
        assert database.get_date_range() == (date(2023, 3, 1), date(2024, 3, 1))
        assert stub.requested_ranges == [
            ("2023-03-01", "2024-02-28"),
            ("2024-02-29", "2024-03-01"),
        ]

    def test_backfill_overwrites(self, database):
        database.upsert_records([make_record(date(2024, 2, 1), temp_avg=-40.0)])
        etl = make_etl(database, ArchiveStub(), lookback_years=1)

        etl.backfill(today=date(2024, 3, 1))
        count = etl.backfill(today=date(2024, 3, 1))

        rows = database.get_table()
        assert len(rows) == count
        assert {row.date: row.temp_avg for row in rows}[date(2024, 2, 1)] == pytest.approx(1.0)


class TestRecomputeAverages:
    """Test cases for TemperatureETL.recompute_averages."""

    def test_recompute(self, database):
        database.upsert_records(
            [
                make_record(date(2024, 1, 1), temp_avg=2.0, temp_avg7=2.0),
                make_record(date(2024, 1, 2), temp_avg=4.0, temp_avg7=0.0),
                make_record(date(2024, 1, 4), temp_avg=6.0, temp_avg7=4.0),
            ]
        )

        count = TemperatureETL(database).recompute_averages()

        rows = database.get_table()
        assert count == 1
        assert [row.temp_avg7 for row in rows] == pytest.approx([2.0, 3.0, 4.0])

    def test_recompute_empty_store(self, database):
        assert TemperatureETL(database).recompute_averages() == 0


class TestExportCsv:
    """Test cases for TemperatureETL.export_csv."""

    def test_export(self, tmp_path):
        stub = ArchiveStub(
            failing_starts={date(2022, 1, 1)},
            values={date(2023, 1, 2): 3.14159, date(2023, 1, 3): None},
        )
        client = OpenMeteoArchiveClient(
            OpenMeteoClientConfig(request_delay=0.0), session=stub
        )
        path = tmp_path / "history.csv"

        count = TemperatureETL(None, ChunkedArchiveFetcher(client)).export_csv(
            str(path), start_year=2021, today=date(2023, 1, 5)
        )

        with open(path, newline="") as file:
            rows = list(csv.DictReader(file))

        assert list(rows[0].keys()) == [
            "date",
            "tempHigh",
            "tempLow",
            "tempAvg",
            "tempAvg7",
            "source",
        ]
        assert count == len(rows) == 365 + 4
        assert rows[0]["date"] == "2021-01-01"
        assert not any(row["date"].startswith("2022") for row in rows)
        assert "2023-01-03" not in {row["date"] for row in rows}

        by_date = {row["date"]: row for row in rows}
        assert by_date["2023-01-02"]["tempAvg"] == "3.1"
        assert by_date["2023-01-02"]["tempHigh"] == "8.1"
        assert by_date["2023-01-02"]["source"] == "Open-Meteo"
        assert not (tmp_path / "history.csv.tmp").exists()


class TestRun:
    """Test cases for TemperatureETL.run."""

    def test_update_result(self, database):
        etl = make_etl(database, ArchiveStub(), epoch_start_date=date.today())

        result = etl.run("update")

        assert result.success
        assert result.added_count == 1
        assert result.message == "Added 1 new records."

        result = etl.run("update")
        assert result.success
        assert result.added_count == 0
        assert result.message == "Data is already up to date."

    def test_failure_result(self, database):
        etl = make_etl(
            database,
            ArchiveStub(failing_starts={date.today()}),
            epoch_start_date=date.today(),
        )

        result = etl.run("update")

        assert not result.success
        assert result.added_count is None
        assert result.message.startswith("Error while updating temperature data:")
