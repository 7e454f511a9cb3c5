"""
Tests for model reference resolution and the tensor hash cache.
"""

import json
import os
from types import SimpleNamespace

import pytest

from expanded_metadata.model_registry import (
    DirectoryModelRegistry,
    FolderPathsRegistry,
    ModelResolutionError,
    normalize_model_path,
)


class TestNormalizeModelPath:

    @pytest.mark.parametrize("raw,expected", [
        ("sdxl/model.safetensors", "sdxl/model.safetensors"),
        ("\\sdxl\\model.safetensors", "sdxl/model.safetensors"),
        ("//sdxl////model.safetensors", "sdxl/model.safetensors"),
        ("", ""),
        (None, ""),
    ])
    def test_normalization(self, raw, expected):
        assert normalize_model_path(raw) == expected


class TestDirectoryModelRegistry:

    def test_resolves_with_subfolder(self, registry, models_root, make_safetensors):
        path = make_safetensors(models_root / "checkpoints" / "sdxl" / "model.safetensors")
        ref = registry.resolve("\\sdxl\\model.safetensors", "checkpoints")
        assert ref.file_path == os.path.realpath(path)
        assert ref.model_path == "sdxl/model.safetensors"
        assert ref.display_name == "model"
        assert ref.file_name == "model.safetensors"

    def test_default_and_alias_subtypes(self, registry, models_root, make_safetensors):
        make_safetensors(models_root / "checkpoints" / "a.safetensors")
        make_safetensors(models_root / "loras" / "b.safetensors")
        assert registry.resolve("a.safetensors").subtype == "checkpoints"
        assert registry.resolve("a.safetensors", "Stable-Diffusion").subtype == "checkpoints"
        assert registry.resolve("b.safetensors", "LoRA").subtype == "loras"

    def test_unknown_subtype(self, registry):
        with pytest.raises(ModelResolutionError) as excinfo:
            registry.resolve("a.safetensors", "NotAType")
        assert excinfo.value.status == 400
        assert str(excinfo.value) == "Invalid sub-type."

    def test_missing_model(self, registry):
        with pytest.raises(ModelResolutionError) as excinfo:
            registry.resolve("missing.safetensors", "checkpoints")
        assert excinfo.value.status == 404
        assert "Model not found: missing.safetensors in checkpoints" in str(excinfo.value)

    def test_missing_model_path(self, registry):
        with pytest.raises(ModelResolutionError) as excinfo:
            registry.resolve("", "checkpoints")
        assert excinfo.value.status == 400

    def test_model_path_cannot_escape_folder(self, registry, models_root, make_safetensors):
        make_safetensors(models_root / "loras" / "b.safetensors")
        with pytest.raises(ModelResolutionError):
            registry.resolve("../loras/b.safetensors", "checkpoints")


class TestTensorHashCache:

    def test_remembered_hash_is_returned_on_resolve(self, registry, models_root, make_safetensors):
        make_safetensors(models_root / "checkpoints" / "a.safetensors")
        ref = registry.resolve("a.safetensors")
        assert ref.known_tensor_hash is None
        registry.remember_tensor_hash(ref.file_path, "ab" * 32)
        assert registry.resolve("a.safetensors").known_tensor_hash == "ab" * 32

    def test_changed_file_drops_cached_hash(self, registry, models_root, make_safetensors):
        path = make_safetensors(models_root / "checkpoints" / "a.safetensors")
        ref = registry.resolve("a.safetensors")
        registry.remember_tensor_hash(ref.file_path, "ab" * 32)
        make_safetensors(path, payload=bytes(64))
        assert registry.resolve("a.safetensors").known_tensor_hash is None


class TestFolderPathsRegistry:

    def test_delegates_to_folder_paths(self, tmp_path, make_safetensors):
        path = make_safetensors(tmp_path / "m.safetensors")
        module = SimpleNamespace(
            folder_names_and_paths={"checkpoints": ([str(tmp_path)], {".safetensors"})},
            get_full_path=lambda folder, name: str(tmp_path / name) if folder == "checkpoints" else None,
        )
        registry = FolderPathsRegistry(module)
        assert registry.resolve("m.safetensors", "Stable-Diffusion").file_path == str(path)
        with pytest.raises(ModelResolutionError):
            registry.resolve("other.safetensors", "checkpoints")


class TestHashIndex:

    def test_index_is_shared_across_registries(self, models_root, make_safetensors, tmp_path):
        make_safetensors(models_root / "checkpoints" / "a.safetensors")
        index_path = str(tmp_path / "store" / "tensor_hashes.json")
        first = DirectoryModelRegistry(str(models_root))
        first.load_hash_index(index_path)
        first.remember_tensor_hash(first.resolve("a.safetensors").file_path, "cd" * 32)

        second = DirectoryModelRegistry(str(models_root))
        second.load_hash_index(index_path)
        assert second.resolve("a.safetensors").known_tensor_hash == "cd" * 32

    def test_stale_entry_is_ignored(self, models_root, make_safetensors, tmp_path):
        path = make_safetensors(models_root / "checkpoints" / "a.safetensors")
        index_path = str(tmp_path / "tensor_hashes.json")
        first = DirectoryModelRegistry(str(models_root))
        first.load_hash_index(index_path)
        first.remember_tensor_hash(first.resolve("a.safetensors").file_path, "cd" * 32)
        make_safetensors(path, payload=bytes(64))

        second = DirectoryModelRegistry(str(models_root))
        second.load_hash_index(index_path)
        assert second.resolve("a.safetensors").known_tensor_hash is None

    def test_unreadable_index_starts_empty(self, registry, models_root, make_safetensors, tmp_path):
        make_safetensors(models_root / "checkpoints" / "a.safetensors")
        index_path = tmp_path / "tensor_hashes.json"
        index_path.write_text("[not json", encoding="utf-8")
        registry.load_hash_index(str(index_path))
        assert registry.resolve("a.safetensors").known_tensor_hash is None
        registry.remember_tensor_hash(registry.resolve("a.safetensors").file_path, "ef" * 32)
        assert json.loads(index_path.read_text(encoding="utf-8"))
