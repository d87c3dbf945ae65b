import json
from datetime import datetime, timedelta, timezone

from typer.testing import CliRunner

from aidloop.cli.cli import app

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

runner = CliRunner()


def _write_scenario(tmp_path, newest_age=0, **extra):
    data = {
        "scenario_name": "post-meal",
        "now": NOW.isoformat(),
        "profile": {
            "isf_schedule": [{"offset_minutes": 0, "value": 50}],
            "carb_ratio_schedule": [{"offset_minutes": 0, "value": 10}],
            "basal_schedule": [{"offset_minutes": 0, "value": 0.8}],
            "target_schedule": [{"offset_minutes": 0, "low": 100, "high": 100}],
        },
        "glucose": [
            {"timestamp": (NOW - timedelta(minutes=newest_age + 5 * i)).isoformat(), "value": 200 - i}
            for i in range(12)
        ],
        "carbs": [{"timestamp": (NOW - timedelta(minutes=40)).isoformat(), "grams": 30}],
    }
    data.update(extra)
    path = tmp_path / "scenario.json"
    path.write_text(json.dumps(data))
    return path


def test_predict_command():
    result = runner.invoke(app, ["predict", "--bg", "200", "--iob", "0.5"])

    assert result.exit_code == 0
    assert "Predicted glucose" in result.output
    assert "insulinReq" in result.output


def test_predict_json_and_csv(tmp_path):
    csv_path = tmp_path / "pred.csv"
    result = runner.invoke(app, ["predict", "--bg", "150", "--json"])
    assert result.exit_code == 0
    assert json.loads(result.output)["insulinReq"] == 1.0

    result = runner.invoke(app, ["predict", "--bg", "150", "--output-csv", str(csv_path)])
    assert result.exit_code == 0
    assert csv_path.read_text().splitlines()[0] == "minutes,IOB,ZT,COB,UAM"


def test_meal_command(tmp_path):
    result = runner.invoke(app, ["meal", str(_write_scenario(tmp_path))])

    assert result.exit_code == 0
    assert "mealCOB" in result.output


def test_loop_open_loop_persists_suggestion(tmp_path):
    out_dir = tmp_path / "out"
    result = runner.invoke(app, ["loop", str(_write_scenario(tmp_path)), "--output-dir", str(out_dir)])

    assert result.exit_code == 0
    assert "open loop" in result.output
    assert (out_dir / "suggested.json").exists()
    assert not (out_dir / "enacted.json").exists()


def test_loop_closed_loop_sends_commands(tmp_path):
    out_dir = tmp_path / "out"
    result = runner.invoke(
        app, ["loop", str(_write_scenario(tmp_path)), "--closed-loop", "--output-dir", str(out_dir)]
    )

    assert result.exit_code == 0
    assert "Pump commands" in result.output
    enacted = json.loads((out_dir / "enacted.json").read_text())
    assert enacted["received"] is True
    assert enacted["rate"] <= 3.0


def test_loop_fails_on_stale_glucose(tmp_path):
    result = runner.invoke(app, ["loop", str(_write_scenario(tmp_path, newest_age=20))])

    assert result.exit_code == 1
    assert "Loop failed" in result.output


def test_validate_reports_invalid_scenario(tmp_path):
    path = _write_scenario(tmp_path, pump={"basal_step": -1})

    result = runner.invoke(app, ["validate", str(path)])

    assert result.exit_code == 1
    assert "pump.basal_step" in result.output


def test_validate_profile_command(tmp_path):
    good = tmp_path / "profile.json"
    good.write_text(json.dumps({
        "isf_schedule": [{"offset_minutes": 0, "value": 50}],
        "carb_ratio_schedule": [{"offset_minutes": 0, "value": 10}],
        "basal_schedule": [{"offset_minutes": 0, "value": 0.8}],
        "target_schedule": [{"offset_minutes": 0, "low": 100, "high": 110}],
    }))
    missing = tmp_path / "nope.yaml"

    assert runner.invoke(app, ["validate-profile", str(good)]).exit_code == 0
    result = runner.invoke(app, ["validate-profile", str(missing)])
    assert result.exit_code == 1
    assert "Error" in result.output
