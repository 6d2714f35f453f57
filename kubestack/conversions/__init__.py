"""Stack schema versions and their conversion to the canonical form."""

from __future__ import annotations

from kubestack.conversions.base import StackConverter
from kubestack.conversions.v1alpha3 import V1Alpha3Converter
from kubestack.conversions.v1beta2 import V1Beta2Converter

_CONVERTERS: dict[str, StackConverter] = {
    c.version: c for c in (V1Alpha3Converter(), V1Beta2Converter())
}

SUPPORTED_VERSIONS = tuple(_CONVERTERS)


def converter_for(version: str) -> StackConverter:
    """Converter for ``version`` (``v1alpha3``) or a full apiVersion (``kubestack.io/v1alpha3``)."""
    converter = _CONVERTERS.get(version.rpartition("/")[2])
    if converter is None:
        raise ValueError(f"Unsupported stack api version: {version}")
    return converter


__all__ = ["SUPPORTED_VERSIONS", "StackConverter", "V1Alpha3Converter", "V1Beta2Converter", "converter_for"]
