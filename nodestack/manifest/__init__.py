"""Service manifest package for loading and resolving service specs."""

from .loader import (
	ServiceManifest,
	ServiceManifestBuilder,
	manifest_interpolate,
	manifest_load_file,
	manifest_variable_name,
)

__all__ = [
	"ServiceManifest",
	"ServiceManifestBuilder",
	"manifest_interpolate",
	"manifest_load_file",
	"manifest_variable_name",
]
