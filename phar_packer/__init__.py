"""phar-packer.

A build utility that packs a composer project and its installed dependencies
into a single, self-contained ``.phar`` archive.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
