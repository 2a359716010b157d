"""Nearest-centroid identity clustering."""
