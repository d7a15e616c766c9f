"""
Artifact builders for llamabox.

A llamafile (serving executable with the model appended and aligned) and a
container image (serving executable plus model files behind a Dockerfile).
External tools are reached through the Packager and ImageBuilder interfaces.
"""
