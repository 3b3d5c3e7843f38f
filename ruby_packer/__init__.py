"""ruby-packer.

A build utility that packs a Ruby application, its gems and the Ruby
interpreter itself into a single native executable.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
