import json

from vision_mux import cli


def test_parse_args_collects_enabled_kinds():
    args = cli.parse_args(["-e", "fiducial", "--enable", "yellow", "--frames", "5", "--parallel"])
    assert args.enable == ["fiducial", "yellow"]
    assert args.frames == 5
    assert args.parallel is True
    assert args.video_file is None


def test_unknown_camera_exits_with_configuration_status(tmp_path):
    profile_path = tmp_path / "vision_profile.json"
    profile_path.write_text(json.dumps({"camera": {"name": "Ghost Cam"}}), encoding="utf-8")
    assert cli.main(["--profile", str(profile_path), "--frames", "1"]) == 2


def test_unknown_pipeline_name_exits_with_configuration_status(tmp_path):
    profile_path = tmp_path / "vision_profile.json"
    profile_path.write_text(json.dumps({"camera": {"name": "Ghost Cam"}}), encoding="utf-8")
    assert cli.main(["--profile", str(profile_path), "--enable", "lidar"]) == 2
