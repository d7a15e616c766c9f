"""
Local asset cache for llamabox.

Maps model references (local paths, URLs, hosted repository files) and
release tool binaries to files on disk, downloading only what is missing.
"""
