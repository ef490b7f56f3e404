import json

import pytest

from tivasim.cli import main


@pytest.fixture
def config_file(tmp_path):
    def _write(data):
        path = tmp_path / "config.json"
        path.write_text(json.dumps(data))
        return str(path)

    return _write


def test_simulate_default_events(capsys):
    assert main(["simulate", "--duration", "30", "--every", "5"]) == 0
    out = capsys.readouterr().out
    assert "Method: RK4 + VHAC" in out
    assert "plasma_conc" in out


def test_simulate_from_config(config_file, capsys):
    path = config_file({
        "patient": {"age": 55, "weight": 80, "height": 175, "sex": "female"},
        "events": [
            {"time": 0, "bolus": 5.0, "rate": 1.0},
            {"time": 15, "rate": 0.5},
        ],
        "simulation": {"output_interval": 5.0},
    })
    assert main(["--config", path, "simulate", "--method", "Euler", "--every", "1"]) == 0
    out = capsys.readouterr().out
    assert "2 dose events" in out
    assert "Euler + VHAC" in out


def test_simulate_rate_unit_conversion(capsys):
    assert main(["simulate", "--duration", "10", "--rate", "70", "--rate-unit", "mg/hr"]) == 0
    out = capsys.readouterr().out
    assert "Total bolus: 6.0 mg" in out
    assert "Peak rate: 1.000 mg/kg/hr" in out


def test_simulate_safety_violation_still_reports(config_file, capsys):
    path = config_file({"events": [{"time": 0, "bolus": 80.0}]})
    assert main(["--config", path, "simulate", "--duration", "10"]) == 0
    out = capsys.readouterr().out
    assert "SAFETY" in out
    assert "Max Cp" in out


def test_optimize(config_file, capsys):
    path = config_file({"protocol": {"time_step": 0.05, "simulation_duration": 120.0}})
    assert main(["--config", path, "optimize", "--target", "1.0"]) == 0
    out = capsys.readouterr().out
    assert "Optimized rate" in out
    assert "Score" in out


def test_compare(capsys):
    assert main(["compare", "--duration", "10", "--dt", "0.1"]) == 0
    out = capsys.readouterr().out
    assert "Euler" in out and "Adaptive RK4" in out


def test_invalid_input_returns_error_code(config_file, capsys):
    path = config_file({"patient": {"age": 10}})
    assert main(["--config", path, "compare"]) == 1
    assert "Error" in capsys.readouterr().out


def test_unknown_config_key_returns_error_code(config_file, capsys):
    path = config_file({"simulation": {"solver": "LSODA"}})
    assert main(["--config", path, "simulate"]) == 1
