# tests/test_basics.py
import logging

import pytest

import alsgrid
from alsgrid import cli, lidar, raster
from alsgrid.raster import load

def test_imports():
    """Simple smoke test to ensure modules import correctly."""
    assert lidar is not None
    assert raster is not None
    assert cli is not None
    assert alsgrid.__version__

def test_public_api_is_exported():
    for name in alsgrid.__all__:
        assert hasattr(alsgrid, name), name
    for name in lidar.__all__:
        assert hasattr(lidar, name), name
    for name in raster.__all__:
        assert hasattr(raster, name), name

def test_cli_requires_a_command():
    with pytest.raises(SystemExit):
        cli.main([])

def test_cli_parser_defaults():
    args = cli.build_parser().parse_args(["run", "in.las", "out"])

    assert args.resolution == 1.0
    assert args.ground_class == 2
    assert args.exclude_class == []
    assert args.dtm_method == "idw"
    assert args.dsm_method == "none"
    assert args.rmax == 50.0

def test_cli_run(tmp_path, synthetic_plot, las_factory):
    """
    Module: cli
    Function: main
    Test: Runs the full pipeline on a LAS file and checks the exit code and outputs.
    """
    path = las_factory(synthetic_plot)
    out = tmp_path / "products"

    with pytest.raises(SystemExit) as excinfo:
        cli.main([
            "run", str(path), str(out),
            "--exclude-class", "22",
            "--max-elevation", "200",
            "--terrain-metrics",
            "--workers", "2"
        ])

    assert excinfo.value.code == 0
    for name in ("dtm", "dsm", "chm", "density", "slope", "aspect", "hillshade"):
        assert (out / f"{name}.tif").exists()
    assert load(out / "dtm.tif").provenance.parameters["k"] == 10

def test_cli_fatal_error_exits_with_one(tmp_path, caplog):
    broken = tmp_path / "broken.las"
    broken.write_bytes(b"garbage" * 100)

    with caplog.at_level(logging.ERROR):
        code = cli.run(cli.build_parser().parse_args(["run", str(broken), str(tmp_path / "out"), "--crs", "EPSG:32619"]))

    assert code == 1
    assert "Pipeline failed" in caplog.text

def test_cli_invalid_configuration_exits_with_one(tmp_path):
    args = cli.build_parser().parse_args(["run", "in.las", str(tmp_path), "--resolution", "-1"])
    assert cli.run(args) == 1
