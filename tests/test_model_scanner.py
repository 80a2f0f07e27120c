from llama_manager.core.model_scanner import scan_local_models, split_part_info


def _touch(path, size=1):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)


def test_split_part_info():
    assert split_part_info("big-00002-of-00004.gguf") == (2, 4, "big.gguf")
    assert split_part_info("big.gguf") is None


def test_single_files_and_subdirectories(models_dir):
    _touch(models_dir / "a.gguf", 3)
    _touch(models_dir / "family" / "b.gguf")
    _touch(models_dir / "notes.txt")

    models = scan_local_models(str(models_dir))

    assert [m.name for m in models] == ["a.gguf", "family/b.gguf"]
    assert models[0].size == 3
    assert not models[0].is_split


def test_split_models_are_grouped(models_dir):
    for part in (2, 1, 3):
        _touch(models_dir / "big" / f"big-{part:05d}-of-00003.gguf", 2)

    models = scan_local_models(str(models_dir))

    assert len(models) == 1
    model = models[0]
    assert model.name == "big/big.gguf"
    assert model.path.endswith("big-00001-of-00003.gguf")
    assert model.is_split
    assert model.size == 6
    assert model.parts_found == 3
    assert not model.incomplete


def test_missing_shard_marks_incomplete(models_dir):
    _touch(models_dir / "big-00001-of-00003.gguf")
    _touch(models_dir / "big-00002-of-00003.gguf")

    model = scan_local_models(str(models_dir))[0]

    assert model.incomplete
    assert model.part_count == 3
    assert model.parts_found == 2


def test_aliases_are_attached(models_dir):
    _touch(models_dir / "a.gguf")
    models = scan_local_models(str(models_dir), aliases={"a.gguf": "Model A"})
    assert models[0].alias == "Model A"


def test_missing_directory_is_empty(tmp_path):
    assert scan_local_models(str(tmp_path / "nope")) == []
