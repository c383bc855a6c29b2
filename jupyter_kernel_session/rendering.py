"""
Output rendering
================

Maps nbformat outputs to displayable fragments. Pure functions of their
input: nothing here touches connection state.

- stream                          -> the stream text
- display_data / execute_result   -> first match of the registry's MIME order
                                     (text/html, image/png, text/plain)
- error                           -> traceback lines joined with newlines
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from .config import MathjaxOptions

DEFAULT_MIME_ORDER = ("text/html", "image/png", "text/plain")


@dataclass(frozen=True)
class RenderedFragment:
    """Rich output: exactly one of html or image is set."""

    html: Optional[str] = None
    image: Optional[str] = None


Rendered = Union[str, RenderedFragment]


def _join_text(value: Any) -> str:
    # nbformat allows multiline strings to be stored as lists of lines
    if isinstance(value, (list, tuple)):
        return "".join(value)
    return value


class OutputRegistry:
    """MIME renderer registry bound to one connection's math configuration."""

    def __init__(
        self,
        mathjax: Optional[MathjaxOptions] = None,
        mime_order: Sequence[str] = DEFAULT_MIME_ORDER,
    ):
        self.mathjax = mathjax or MathjaxOptions()
        self.mime_order = tuple(mime_order)

    def render_mime(self, data: Mapping[str, Any]) -> Optional[Rendered]:
        for mime_type in self.mime_order:
            value = data.get(mime_type)
            if not value:
                continue
            if mime_type == "text/html":
                return RenderedFragment(html=_join_text(value))
            if mime_type.startswith("image/"):
                return RenderedFragment(image=f"data:{mime_type};base64,{_join_text(value)}")
            return _join_text(value)
        return None

    def render(self, output: Optional[Mapping[str, Any]]) -> Optional[Rendered]:
        if not output:
            return None
        output_type = output.get("output_type")
        if output_type == "stream":
            return _join_text(output.get("text", ""))
        if output_type in ("display_data", "execute_result"):
            data = output.get("data") or {}
            return self.render_mime(data)
        if output_type == "error":
            return "\n".join(output.get("traceback") or [])
        return None


def build_output_registry(mathjax: Optional[MathjaxOptions] = None) -> OutputRegistry:
    return OutputRegistry(mathjax=mathjax)


_default_registry = OutputRegistry()


def render_output(
    output: Optional[Dict[str, Any]], registry: Optional[OutputRegistry] = None
) -> Optional[Rendered]:
    """Render one output with the given registry, or the default MIME order."""
    return (registry or _default_registry).render(output)
