"""
fixlines - Rewrite the line endings of text files to LF, safely.

This module provides functionality to:
- Detect text files and their encoding with chardet, a chunk at a time
- Skip binary files and encodings that are unsafe to split on LF
- Rewrite each file through a temporary sibling and an atomic rename
- Walk directories recursively without following symbolic links
"""

__version__ = "1.0.0"
