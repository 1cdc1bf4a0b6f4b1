import yaml
from click.testing import CliRunner
from pyramidal_sim.scripts.run_bombardment import main


def test_run_bombardment_default():
    runner = CliRunner()
    result = runner.invoke(main, ["--tstop", "20", "--t-start", "5", "--seed", "4"])
    assert result.exit_code == 0, result.output
    assert "soma: Vm mean" in result.output


def test_run_bombardment_config(tmp_path, small_model):
    config_file = tmp_path / "model.yaml"
    with open(config_file, "w") as f:
        yaml.dump(small_model().data, f)

    runner = CliRunner()
    result = runner.invoke(
        main,
        [
            "--config",
            str(config_file),
            "--tstop",
            "20",
            "--t-start",
            "5",
            "--set",
            "Synapse Mechanisms.AMPA.gmax",
            "0.002",
            "--measure-rin",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Rin =" in result.output


def test_run_bombardment_rejects_structural_parameter():
    runner = CliRunner()
    result = runner.invoke(
        main, ["--tstop", "5", "--set", "Global Parameters.celsius", "30"]
    )
    assert result.exit_code != 0
    assert isinstance(result.exception, ValueError)
