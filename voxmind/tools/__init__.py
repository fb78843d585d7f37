"""Built-in tools exposed to the model as capabilities."""
from voxmind.tools.filesystem import FilesystemTools, build_filesystem_tools, validate_path

__all__ = ["FilesystemTools", "build_filesystem_tools", "validate_path"]
