import data_paths
from database import KeyValueStore


def test_data_dir_comes_from_the_environment(tmp_path, monkeypatch):
    target = tmp_path / "classroom" / "data"
    monkeypatch.setenv(data_paths.DATA_DIR_ENV, str(target))

    path = data_paths.default_storage_path()

    assert path == target / data_paths.STORAGE_FILENAME
    assert target.is_dir()


def test_default_data_dir_sits_beside_the_application(monkeypatch):
    monkeypatch.delenv(data_paths.DATA_DIR_ENV, raising=False)

    assert data_paths.data_root() == data_paths.APP_ROOT / "data"


def test_store_without_a_path_uses_the_data_root(tmp_path, monkeypatch):
    monkeypatch.setenv(data_paths.DATA_DIR_ENV, str(tmp_path))
    sibling = tmp_path.parent / "data"
    sibling.mkdir(exist_ok=True)
    (sibling / "keep.txt").write_text("untouched")

    with KeyValueStore() as kv:
        kv.set_item("students", "[]")
        assert kv.path == tmp_path / data_paths.STORAGE_FILENAME

    assert (sibling / "keep.txt").read_text() == "untouched"
