import json
import logging
import pathlib

import pytest


CONFIG_PHP: str = """<?php

declare(strict_types=1);

use Hyperf\\Contract\\StdoutLoggerInterface;

return [
    'app_name' => env('APP_NAME', 'skeleton'),
    'scan_cacheable' => env('SCAN_CACHEABLE', false),
    StdoutLoggerInterface::class => [
        'log_level' => [],
    ],
];
"""

CONFIG_FACTORY_PHP: str = """<?php

declare(strict_types=1);

namespace Hyperf\\Config;

use Psr\\Container\\ContainerInterface;
use Symfony\\Component\\Finder\\Finder;

class ConfigFactory
{
    public function __invoke(ContainerInterface $container)
    {
        $configPath = BASE_PATH . '/config/';
        $config = $this->readConfig($configPath . 'config.php');
        $autoloadConfig = $this->readPaths([BASE_PATH . '/config/autoload']);
        $merged = array_merge_recursive(ProviderConfig::load(), $config, ...$autoloadConfig);
        return new Config($merged);
    }

    private function readConfig(string $configPath): array
    {
        $config = [];
        if (file_exists($configPath) && is_readable($configPath)) {
            $config = require $configPath;
        }
        return is_array($config) ? $config : [];
    }

    private function readPaths(array $paths): array
    {
        $configs = [];
        $finder = new Finder();
        $finder->files()->in($paths)->name('*.php');
        foreach ($finder as $file) {
            $configs[] = [
                $file->getBasename('.php') => require $file->getRealPath(),
            ];
        }
        return $configs;
    }
}
"""

MAIN_PHP: str = """#!/usr/bin/env php
<?php

ini_set('display_errors', 'on');
require BASE_PATH . '/vendor/autoload.php';
echo "hello";
"""


def write(root: pathlib.Path, rel: str, contents: str = "") -> pathlib.Path:
    path: pathlib.Path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(contents, encoding="utf-8")
    return path


def make_project(
    root: pathlib.Path,
    *,
    installed: object | None = None,
    manifest: dict | None = None,
) -> pathlib.Path:
    """Lay out a small installed composer project under ``root``."""

    if manifest is None:
        manifest = {"name": "acme/demo", "bin": ["bin/hyperf.php"]}
    if installed is None:
        installed = {
            "packages": [
                {"name": "hyperf/config"},
                {"name": "psr/log", "target-dir": "Psr/Log"},
            ],
            "dev": True,
            "dev-package-names": [],
        }

    write(root, "composer.json", json.dumps(manifest))
    write(root, "bin/hyperf.php", MAIN_PHP)
    write(root, "src/App.php", "<?php\nclass App {}\n")
    write(root, "config/config.php", CONFIG_PHP)
    write(root, ".env", "APP_ENV=dev\n")
    write(root, ".git/HEAD", "ref: refs/heads/main\n")
    write(root, "composer.phar", "not really a phar")
    write(root, "runtime/container/proxy/App.proxy.php", "<?php\n")
    write(root, "runtime/hyperf.pid", "123")
    write(root, "runtime/logs/hyperf.log", "log line")

    write(root, "vendor/autoload.php", "<?php\nreturn require __DIR__ . '/composer/autoload_real.php';\n")
    write(root, "vendor/composer/autoload_real.php", "<?php\n")
    write(root, "vendor/composer/installed.json", json.dumps(installed))
    write(root, "vendor/composer/nested/skip.php", "<?php\n")

    write(root, "vendor/hyperf/config/composer.json", json.dumps({"name": "hyperf/config"}))
    write(root, "vendor/hyperf/config/src/ConfigFactory.php", CONFIG_FACTORY_PHP)
    write(root, "vendor/hyperf/config/composer.phar", "root phar")
    write(root, "vendor/hyperf/config/src/composer.phar", "nested phar")
    write(root, "vendor/psr/log/Psr/Log/LoggerInterface.php", "<?php\ninterface LoggerInterface {}\n")
    write(root, "vendor/psr/log/README.md", "outside target-dir")
    return root


@pytest.fixture
def project(tmp_path: pathlib.Path) -> pathlib.Path:
    return make_project(tmp_path / "demo")


@pytest.fixture
def project_factory():
    return make_project


@pytest.fixture
def config_php() -> str:
    return CONFIG_PHP


@pytest.fixture
def config_factory_php() -> str:
    return CONFIG_FACTORY_PHP


@pytest.fixture(autouse=True)
def _reset_logger():
    yield
    logger = logging.getLogger("phar_packer")
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
