import pytest


@pytest.fixture
def environment(tmp_path):
    local_path = tmp_path / "local"
    local_path.mkdir()

    remote_root = tmp_path / "remote"
    remote_root.mkdir()

    remotes_file = tmp_path / "rclone.conf"
    remotes_file.write_text(f"[scratch]\ntype = local\nroot = {remote_root}\n")

    return {
        "RCLONE_REMOTE": "scratch",
        "LOCAL_PATH": str(local_path),
        "MERGED_PATH": str(tmp_path / "merged"),
        "NEOMOUNT_CONFIG": str(remotes_file),
        "CACHE_DIR": str(tmp_path / "cache"),
        "MIN_FREE_SPACE": "0",
        "POLL_INTERVAL": "0",
        "MOVE_TRANSFERS": "2",
        "MOVE_CHECKERS": "2",
    }
