"""Bundled example project written by `layerforge --init`."""
