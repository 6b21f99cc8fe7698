import json
import logging
import os
import pathlib
import shutil
import subprocess

import pytest

from phar_packer import builder as builder_mod
from phar_packer.archive import ArchiveSession
from phar_packer.builder import LEADING_DECLARE_RE, PharBuilder, mount_link_code
from phar_packer.config import BuildConfig
from phar_packer.errors import (
    BuildError,
    InvalidInputError,
    MissingEntryPointError,
    NotInstalledError,
    PublishFailedError,
    UnparsableSourceError,
    UnwritableError,
)
from phar_packer.phar import read_phar


def _builder(project: pathlib.Path, **kwargs) -> PharBuilder:
    return PharBuilder(BuildConfig(manifest_path=project / "composer.json", **kwargs))


def test_build_packs_project(project: pathlib.Path) -> None:
    target = _builder(project).build()

    assert target == project.resolve() / "demo.phar"
    archive = read_phar(target)
    names = set(archive.names())

    assert {
        "composer.json",
        "src/App.php",
        "config/config.php",
        "runtime/container/proxy/App.proxy.php",
        "vendor/autoload.php",
        "vendor/composer/autoload_real.php",
        "vendor/composer/installed.json",
        "vendor/hyperf/config/composer.json",
        "vendor/hyperf/config/src/ConfigFactory.php",
        "vendor/hyperf/config/src/composer.phar",
        "vendor/psr/log/Psr/Log/LoggerInterface.php",
        "bin/hyperf.php",
    } <= names

    assert ".env" not in names
    assert ".git/HEAD" not in names
    assert "composer.phar" not in names
    assert "runtime/hyperf.pid" not in names
    assert "runtime/logs/hyperf.log" not in names
    assert "vendor/composer/nested/skip.php" not in names
    assert "vendor/hyperf/config/composer.phar" not in names
    assert "vendor/psr/log/README.md" not in names
    assert not any(n.endswith(".phar") and n.startswith("demo") for n in names)

    assert archive.names()[-1] == "bin/hyperf.php"
    assert not list(project.glob("demo.phar.*.phar"))


def test_build_rewrites_known_files(project: pathlib.Path) -> None:
    archive = read_phar(_builder(project).build())

    config = archive.read("config/config.php").decode("utf-8")
    assert "'scan_cacheable' => true," in config
    assert "'app_name' => env('APP_NAME', 'skeleton')," in config

    factory = archive.read("vendor/hyperf/config/src/ConfigFactory.php").decode("utf-8")
    assert "$file->getPathname()" in factory
    assert "getRealPath" not in factory


def test_entry_point_runs_preamble_first(project: pathlib.Path) -> None:
    archive = read_phar(_builder(project).build())

    main = archive.read("bin/hyperf.php").decode("utf-8")
    assert main.startswith("#!/usr/bin/env php\n<?php\n$mountLink = ['.env', 'runtime/hyperf.pid'];")
    assert main.count("<?php") == 1
    assert main.index("Phar::mount($item, $file);") < main.index("ini_set('display_errors', 'on');")

    assert archive.stub.startswith("#!/usr/bin/env php\n")
    assert "'/bin/hyperf.php'" in archive.stub


def test_custom_mount_links(project: pathlib.Path) -> None:
    archive = read_phar(_builder(project, mount_links=("storage/", ".env.local")).build())

    main = archive.read("bin/hyperf.php").decode("utf-8")
    assert "$mountLink = ['storage/', '.env.local'];" in main


def test_mount_link_code_escapes_quotes() -> None:
    code = mount_link_code(["it's"])

    assert "$mountLink = ['it\\'s'];" in code
    assert code.startswith("<?php\n")


def test_installed_manifest_shapes_agree(tmp_path: pathlib.Path, project_factory) -> None:
    records = [{"name": "hyperf/config"}, {"name": "psr/log", "target-dir": "Psr/Log"}]
    flat = project_factory(tmp_path / "flat", installed=records)
    nested = project_factory(tmp_path / "nested", installed={"packages": records})

    def discovered(root: pathlib.Path) -> list[tuple[str | None, str]]:
        return [(p.name, p.directory[len(str(root.resolve())) :]) for p in _builder(root).dependencies()]

    assert discovered(flat) == discovered(nested) == [
        ("hyperf/config", "/vendor/hyperf/config/"),
        ("psr/log", "/vendor/psr/log/Psr/Log/"),
    ]


def test_metapackages_are_skipped(tmp_path: pathlib.Path, project_factory) -> None:
    root = project_factory(
        tmp_path / "demo",
        installed=[{"name": "hyperf/config"}, {"name": "acme/meta", "type": "metapackage"}],
    )

    assert [p.name for p in _builder(root).dependencies()] == ["hyperf/config"]
    assert _builder(root).build().is_file()


def test_installed_manifest_without_packages(tmp_path: pathlib.Path, project_factory) -> None:
    root = project_factory(tmp_path / "demo", installed={"dev": True})

    with pytest.raises(InvalidInputError):
        _builder(root).dependencies()


def test_version_and_directory_target(project: pathlib.Path, tmp_path: pathlib.Path) -> None:
    out_dir = tmp_path / "dist"
    out_dir.mkdir()

    target = _builder(project, target=str(out_dir), version="1.2").build()

    assert target == out_dir / "demo:1.2.phar"
    assert target.is_file()


def test_short_name_falls_back_to_directory(tmp_path: pathlib.Path, project_factory) -> None:
    root = project_factory(tmp_path / "nameless", manifest={})

    assert _builder(root).target == root.resolve() / "nameless.phar"
    assert _builder(root).main() == "bin/hyperf.php"


def test_readonly_environment(project: pathlib.Path) -> None:
    with pytest.raises(UnwritableError):
        _builder(project, phar_readonly=True).build()
    assert not (project / "demo.phar").exists()


def test_missing_vendor_dir(tmp_path: pathlib.Path) -> None:
    root = tmp_path / "bare"
    root.mkdir()
    (root / "composer.json").write_text(json.dumps({"name": "acme/bare"}), encoding="utf-8")

    with pytest.raises(NotInstalledError, match="composer install"):
        _builder(root).build()


def test_missing_dependency_directory(tmp_path: pathlib.Path, project_factory) -> None:
    root = project_factory(tmp_path / "demo", installed=[{"name": "acme/ghost"}])

    with pytest.raises(NotInstalledError):
        _builder(root).build()
    assert not (root / "demo.phar").exists()


def test_missing_declared_bin(tmp_path: pathlib.Path, project_factory) -> None:
    root = project_factory(tmp_path / "demo", manifest={"name": "acme/demo", "bin": ["bin/missing.php"]})

    with pytest.raises(MissingEntryPointError):
        _builder(root).build()


def test_missing_main_override(project: pathlib.Path) -> None:
    with pytest.raises(MissingEntryPointError):
        _builder(project, main="bin/nope.php").build()


def test_unparsable_config_fails_build(project: pathlib.Path) -> None:
    (project / "config" / "config.php").write_text("<?php\nreturn [\n", encoding="utf-8")

    with pytest.raises(UnparsableSourceError):
        _builder(project).build()
    assert not (project / "demo.phar").exists()


def test_absent_rewrite_targets_are_skipped(project: pathlib.Path) -> None:
    (project / "config" / "config.php").unlink()
    (project / "vendor" / "hyperf" / "config" / "src" / "ConfigFactory.php").unlink()

    names = read_phar(_builder(project).build()).names()

    assert "config/config.php" not in names
    assert "vendor/hyperf/config/src/ConfigFactory.php" not in names


def test_publish_failure_leaves_target_untouched(project: pathlib.Path, monkeypatch) -> None:
    target = project / "demo.phar"
    target.write_bytes(b"previous build")

    def failing_replace(src, dst) -> None:
        raise PermissionError("read-only directory")

    monkeypatch.setattr(builder_mod.os, "replace", failing_replace)

    with pytest.raises(PublishFailedError):
        _builder(project).build()

    assert target.read_bytes() == b"previous build"
    leftovers = list(project.glob("demo.phar.*.phar"))
    assert len(leftovers) == 1
    assert read_phar(leftovers[0]).names()[-1] == "bin/hyperf.php"


def test_rebuild_overwrites_and_ignores_old_archive(project: pathlib.Path, caplog) -> None:
    _builder(project).build()
    (project / "demo.phar.12345.phar").write_bytes(b"debris")

    with caplog.at_level(logging.INFO, logger="phar_packer"):
        target = _builder(project).build()

    names = read_phar(target).names()
    assert "demo.phar" not in names
    assert "demo.phar.12345.phar" not in names
    assert any("overwriting existing file" in r.getMessage() for r in caplog.records)
    assert any("OK - Creating" in r.getMessage() for r in caplog.records)


def test_temporary_path_avoids_collisions(tmp_path: pathlib.Path, monkeypatch) -> None:
    target = tmp_path / "demo.phar"
    (tmp_path / "demo.phar.1.phar").write_bytes(b"")
    values = iter([1, 1, 2])
    monkeypatch.setattr(builder_mod.random, "getrandbits", lambda _bits: next(values))

    assert builder_mod._temporary_path(target) == tmp_path / "demo.phar.2.phar"


def test_entry_point_without_open_tag(project: pathlib.Path) -> None:
    (project / "bin" / "hyperf.php").write_text("echo 1;\n", encoding="utf-8")

    with pytest.raises(InvalidInputError):
        _builder(project).build()
    assert not os.path.exists(project / "demo.phar")


def test_source_edited_before_commit_keeps_archive_valid(project: pathlib.Path, monkeypatch) -> None:
    app = project / "src" / "App.php"
    commit = ArchiveSession.commit

    def edit_then_commit(session: ArchiveSession) -> None:
        app.write_text("<?php\nclass App { public bool $edited = true; }\n", encoding="utf-8")
        commit(session)

    monkeypatch.setattr(ArchiveSession, "commit", edit_then_commit)

    archive = read_phar(_builder(project).build())

    assert archive.read("src/App.php") == app.read_bytes()


def test_vendor_dir_outside_project_is_rejected(tmp_path: pathlib.Path, project_factory) -> None:
    root = project_factory(
        tmp_path / "demo",
        manifest={"name": "acme/demo", "bin": ["bin/hyperf.php"], "config": {"vendor-dir": "../shared"}},
    )
    shutil.move(str(root / "vendor"), str(tmp_path / "shared"))
    (tmp_path / "shared" / "hyperf" / "config" / "src" / "ConfigFactory.php").unlink()

    with pytest.raises(BuildError, match="not within base project path"):
        _builder(root).build()
    assert not (root / "demo.phar").exists()
    assert not list(root.glob("demo.phar.*.phar"))


def test_preamble_follows_leading_declare(project: pathlib.Path) -> None:
    (project / "bin" / "hyperf.php").write_text(
        "#!/usr/bin/env php\n<?php\n/** entry */\ndeclare(strict_types=1);\n\necho 1;\n",
        encoding="utf-8",
    )

    main = read_phar(_builder(project).build()).read("bin/hyperf.php").decode("utf-8")

    assert main.startswith(
        "#!/usr/bin/env php\n<?php\n/** entry */\ndeclare(strict_types=1);\n$mountLink = ["
    )
    assert main.endswith("});\n\necho 1;\n")


@pytest.mark.parametrize(
    ("source", "end"),
    [
        ("<?php declare(strict_types=1); echo 1;", len("<?php declare(strict_types=1);")),
        ("<?php\n// c\ndeclare(ticks=1);\ndeclare(strict_types=1);\n", len("<?php\n// c\ndeclare(ticks=1);\ndeclare(strict_types=1);")),
        ("<?php\necho 1; declare(strict_types=1);", None),
        ("<?php\n#[Attr]\nfunction f() {}\n", None),
    ],
)
def test_leading_declare_detection(source: str, end: int | None) -> None:
    match = LEADING_DECLARE_RE.match(source, len("<?php"))

    assert (match.end() if match is not None else None) == end


def test_mount_link_code_creates_directories_and_files() -> None:
    code = mount_link_code(["storage/", ".env"])

    guard = code.index("if (!file_exists($file)) {")
    is_dir = code.index("if (rtrim($item, '/') != $item) {")
    make_dir = code.index("@mkdir($file, 0777, true);")
    otherwise = code.index("} else {")
    make_parent = code.index("file_exists(dirname($file)) || @mkdir(dirname($file), 0777, true);")
    touch = code.index("file_put_contents($file, '');")
    mount = code.index("Phar::mount($item, $file);")

    assert guard < is_dir < make_dir < otherwise < make_parent < touch < mount
    assert code.count("file_put_contents") == 1
    assert "$path = dirname(realpath($argv[0]));" in code


@pytest.mark.skipif(shutil.which("php") is None, reason="php is not installed")
def test_first_run_creates_mount_points(project: pathlib.Path, tmp_path: pathlib.Path) -> None:
    target = _builder(project, mount_links=(".env", "runtime/hyperf.pid", "storage/")).build()
    deploy = tmp_path / "deploy"
    deploy.mkdir()
    archive = deploy / target.name
    shutil.copy(target, archive)

    subprocess.run([shutil.which("php"), str(archive)], cwd=tmp_path, capture_output=True, timeout=60)

    assert (deploy / ".env").is_file()
    assert (deploy / "runtime" / "hyperf.pid").is_file()
    assert (deploy / "storage").is_dir()
