import csv
import json
from datetime import date

import pytest

from pcreport import (
    ConfigError,
    HistoryEntry,
    HistoryLedger,
    LedgerError,
    Scores,
    Settings,
    Thresholds,
    build_parser,
    main,
    resolve_settings,
    run,
)


def test_end_to_end_threshold_50(export_file, tmp_path):
    xml = export_file()
    out = tmp_path / "report.html"

    rc = main([str(xml), "-o", str(out), "--format", "html,json", "--threshold", "50"])

    assert rc == 0
    assert out.exists()
    data = json.loads(out.with_suffix(".json").read_text(encoding="utf-8"))
    assert data["worst_category"]["name"] == "anomaly"
    assert data["scores"]["global_score"]["band"] == "Critical"


def test_missing_input_exits_1(tmp_path, capsys):
    out = tmp_path / "report.html"
    rc = main([str(tmp_path / "missing.xml"), "-o", str(out)])

    assert rc == 1
    assert "missing.xml" in capsys.readouterr().err
    assert not out.exists()


def test_structural_error_writes_nothing(tmp_path, capsys):
    bad = tmp_path / "bad.xml"
    bad.write_text("<Report><DomainFQDN>corp</DomainFQDN></Report>", encoding="utf-8")
    out = tmp_path / "report.html"
    ledger = tmp_path / "history.csv"

    rc = main([str(bad), "-o", str(out), "--format", "html,csv,json", "--history", "--history-file", str(ledger)])

    assert rc == 1
    assert "HealthcheckData" in capsys.readouterr().err
    assert list(tmp_path.iterdir()) == [bad]


def test_history_mode_appends_and_reports_trend(export_file, tmp_path):
    xml = export_file()
    ledger_path = tmp_path / "history.csv"
    HistoryLedger(ledger_path).append_history(
        "corp.example.com",
        HistoryEntry(date(2020, 1, 1), "corp.example.com", Scores(global_score=90, anomaly=80)),
    )
    out = tmp_path / "report.html"

    rc = main([str(xml), "-o", str(out), "--format", "json", "--history", "--history-file", str(ledger_path)])

    assert rc == 0
    data = json.loads(out.with_suffix(".json").read_text(encoding="utf-8"))
    assert data["scores"]["global_score"]["trend"] == {
        "delta": -15,
        "percent_change": -16.7,
        "direction": "Improved",
    }
    assert data["previous"]["date"] == "2020-01-01"
    assert len(data["history"]) == 2
    assert not out.exists()

    rows = list(csv.DictReader(ledger_path.open(newline="", encoding="utf-8")))
    assert len(rows) == 2
    assert rows[-1]["GlobalScore"] == "75"


def test_unreadable_ledger_is_fatal_and_writes_no_report(export_file, tmp_path):
    xml = export_file()
    ledger_dir = tmp_path / "ledger"
    ledger_dir.mkdir()
    out = tmp_path / "report.html"

    with pytest.raises(LedgerError):
        run(xml, Settings(output=out, history=True, history_file=ledger_dir))
    assert not out.exists()

    rc = main([str(xml), "-o", str(out), "--history", "--history-file", str(ledger_dir)])
    assert rc == 1
    assert not out.exists()


def test_pdf_is_skipped_with_warning(export_file, tmp_path, caplog):
    xml = export_file()
    out = tmp_path / "report.html"

    rc = main([str(xml), "-o", str(out), "--format", "pdf", "--format", "csv"])

    assert rc == 0
    assert out.with_suffix(".csv").exists()
    assert not out.with_suffix(".pdf").exists()
    assert "PDF export" in caplog.text


def test_unknown_format_is_fatal(export_file, tmp_path):
    rc = main([str(export_file()), "-o", str(tmp_path / "r.html"), "--format", "docx"])
    assert rc == 1


def test_lowered_threshold_moves_default_warning_bound(export_file, tmp_path):
    out = tmp_path / "r.html"
    rc = main([str(export_file()), "-o", str(out), "--format", "json", "--threshold", "10"])

    assert rc == 0
    data = json.loads(out.with_suffix(".json").read_text(encoding="utf-8"))
    assert data["thresholds"] == {"warning": 10, "critical": 10}
    assert data["scores"]["trust"]["band"] == "Good"
    assert data["scores"]["stale_objects"]["band"] == "Critical"


def test_explicit_inverted_thresholds_are_fatal(export_file, tmp_path):
    rc = main([
        str(export_file()), "-o", str(tmp_path / "r.html"),
        "--threshold", "10", "--warning-threshold", "30",
    ])
    assert rc == 1


def test_malformed_baseline_findings_is_only_a_warning(export_file, tmp_path, caplog):
    baseline = tmp_path / "last.json"
    baseline.write_text('{"findings": 5}', encoding="utf-8")
    out = tmp_path / "r.html"

    rc = main([str(export_file()), "-o", str(out), "--format", "json", "--baseline", str(baseline)])

    assert rc == 0
    assert "Baseline comparison skipped" in caplog.text
    assert json.loads(out.with_suffix(".json").read_text(encoding="utf-8"))["drift"] is None


def test_missing_output_file_is_not_reported_as_missing_input(export_file, tmp_path, monkeypatch, capsys):
    out = tmp_path / "r.html"

    def failing_export(result, path, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", str(path))

    monkeypatch.setattr("pcreport.export_html", failing_export)
    rc = main([str(export_file()), "-o", str(out)])

    assert rc == 1
    err = capsys.readouterr().err
    assert "Output error" in err
    assert "Input file not found" not in err


def test_missing_baseline_is_only_a_warning(export_file, tmp_path, caplog):
    out = tmp_path / "r.html"
    rc = main([str(export_file()), "-o", str(out), "--baseline", str(tmp_path / "none.json")])
    assert rc == 0
    assert out.exists()
    assert "Baseline comparison skipped" in caplog.text


class TestSettings:
    def _args(self, *extra):
        return build_parser().parse_args(["input.xml", *extra])

    def test_defaults(self):
        settings = resolve_settings(self._args(), {})
        assert settings.thresholds == Thresholds(20, 50)
        assert settings.formats == ["html"]
        assert settings.top == 5
        assert settings.history is False
        assert str(settings.output) == "PingCastle_Report.html"

    def test_config_file_values(self, tmp_path):
        from pcreport import load_config

        cfg = tmp_path / "pcreport.yaml"
        cfg.write_text(
            "thresholds:\n  warning: 30\n  critical: 70\n"
            "top: 3\ntheme: corporate\nformats: [html, json]\nhistory: true\n"
            "history_file: /tmp/ledger.csv\ncompany_name: Contoso\n",
            encoding="utf-8",
        )
        settings = resolve_settings(self._args(), load_config(cfg))

        assert settings.thresholds == Thresholds(30, 70)
        assert settings.top == 3
        assert settings.theme == "corporate"
        assert settings.formats == ["html", "json"]
        assert settings.history is True
        assert str(settings.history_file) == "/tmp/ledger.csv"
        assert settings.company_name == "Contoso"

    def test_cli_overrides_config(self):
        config = {"thresholds": {"critical": 70}, "top": 3, "theme": "dark"}
        settings = resolve_settings(self._args("--threshold", "60", "--top", "10", "--theme", "default"), config)
        assert settings.thresholds.high_medium == 60
        assert settings.top == 10
        assert settings.theme == "default"

    def test_bad_config_values(self, tmp_path):
        from pcreport import load_config

        with pytest.raises(ConfigError):
            resolve_settings(self._args(), {"top": "many"})
        with pytest.raises(ConfigError):
            resolve_settings(self._args(), {"thresholds": [1, 2]})

        not_mapping = tmp_path / "list.yaml"
        not_mapping.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(not_mapping)

        broken = tmp_path / "broken.yaml"
        broken.write_text("thresholds: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(broken)

    def test_unset_warning_threshold_follows_lowered_critical(self):
        assert resolve_settings(self._args("--threshold", "10"), {}).thresholds == Thresholds(10, 10)
        assert resolve_settings(self._args(), {"thresholds": {"critical": 15}}).thresholds == Thresholds(15, 15)
        with pytest.raises(ConfigError):
            resolve_settings(self._args(), {"thresholds": {"warning": 30, "critical": 10}})

    @pytest.mark.parametrize("config", [
        {"history": "false"},
        {"history": 1},
        {"formats": 5},
        {"formats": [5]},
        {"history_file": 5},
        {"output": ["a.html"]},
        {"baseline": 3},
        {"theme": ["dark"]},
    ])
    def test_wrongly_typed_config_values(self, config):
        with pytest.raises(ConfigError):
            resolve_settings(self._args(), config)

    def test_string_false_history_is_fatal_on_cli(self, export_file, tmp_path):
        cfg = tmp_path / "pcreport.yaml"
        cfg.write_text('history: "false"\n', encoding="utf-8")
        rc = main([str(export_file()), "-o", str(tmp_path / "r.html"), "--config", str(cfg)])
        assert rc == 1
        assert not (tmp_path / "r.html").exists()

    def test_missing_config_file_exits_1(self, export_file, tmp_path):
        rc = main([str(export_file()), "-o", str(tmp_path / "r.html"), "--config", str(tmp_path / "none.yaml")])
        assert rc == 1
