"""
Network acquisition for llamabox.

Streaming downloads and release lookups used to fetch model weights, the
serving executable and the alignment tool.
"""
