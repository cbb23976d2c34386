import pytest

from errors import UnsupportedFormat
from models.diagram import DiagramType, OutputFormat, resolve_diagram_type
from services.format_negotiator import (
    DEFAULT_FORMAT_POLICY,
    DEFAULT_FORMATS,
    DEFAULT_SUPPORTED_FORMATS,
    FormatPolicy,
    format_spec,
    negotiate,
)


@pytest.mark.parametrize("diagram_type", list(DiagramType))
def test_default_format_is_always_supported(diagram_type):
    policy = DEFAULT_FORMAT_POLICY
    assert policy.default_format(diagram_type) in policy.supported_formats(diagram_type)


def test_policy_covers_every_diagram_type():
    assert set(DEFAULT_FORMAT_POLICY.diagram_types()) == set(DiagramType)


@pytest.mark.parametrize("diagram_type", list(DiagramType))
@pytest.mark.parametrize("fmt", list(OutputFormat))
def test_negotiate_returns_requested_or_lists_alternatives(diagram_type, fmt):
    supported = DEFAULT_FORMAT_POLICY.supported_formats(diagram_type)
    if fmt in supported:
        assert negotiate(diagram_type, fmt.value) == fmt
    else:
        with pytest.raises(UnsupportedFormat) as exc_info:
            negotiate(diagram_type, fmt.value)
        assert exc_info.value.allowed == [f.value for f in supported]
        assert exc_info.value.status_code == 400


def test_negotiate_without_request_uses_default():
    assert negotiate(DiagramType.PLANTUML, None) == OutputFormat.PNG
    assert negotiate(DiagramType.MERMAID, None) == OutputFormat.SVG
    assert negotiate(DiagramType.BPMN, "") == OutputFormat.SVG


def test_negotiate_is_case_insensitive():
    assert negotiate(DiagramType.GRAPHVIZ, "PDF") == OutputFormat.PDF


def test_unknown_format_is_rejected_not_substituted():
    with pytest.raises(UnsupportedFormat) as exc_info:
        negotiate(DiagramType.MERMAID, "gif")
    assert "svg, png" in exc_info.value.message
    assert exc_info.value.details["allowedFormats"] == ["svg", "png"]
    assert "'gif'" in exc_info.value.message


@pytest.mark.parametrize("requested", ["image/svg", "svgz-compressed-long", "<b>png</b>", "a" * 17])
def test_oddly_shaped_format_is_not_echoed(requested):
    with pytest.raises(UnsupportedFormat) as exc_info:
        negotiate(DiagramType.MERMAID, requested)
    assert exc_info.value.requested == "unrecognised"
    assert requested not in exc_info.value.message
    assert exc_info.value.details["allowedFormats"] == ["svg", "png"]


def test_policy_rejects_default_outside_supported_set():
    with pytest.raises(ValueError):
        FormatPolicy(
            supported={DiagramType.MERMAID: frozenset({OutputFormat.SVG})},
            defaults={DiagramType.MERMAID: OutputFormat.PNG},
            aliases={},
        )


def test_policy_rejects_mismatched_tables():
    with pytest.raises(ValueError):
        FormatPolicy(
            supported=DEFAULT_SUPPORTED_FORMATS,
            defaults={DiagramType.MERMAID: OutputFormat.SVG},
            aliases={},
        )


def test_policy_tables_are_read_only():
    with pytest.raises(TypeError):
        DEFAULT_FORMAT_POLICY.supported[DiagramType.MERMAID] = frozenset({OutputFormat.PDF})


def test_new_diagram_type_is_a_data_change():
    policy = FormatPolicy(
        supported={**DEFAULT_SUPPORTED_FORMATS, DiagramType.BPMN: frozenset({OutputFormat.SVG, OutputFormat.PNG})},
        defaults={**DEFAULT_FORMATS, DiagramType.BPMN: OutputFormat.PNG},
    )
    assert negotiate(DiagramType.BPMN, None, policy) == OutputFormat.PNG
    assert negotiate(DiagramType.BPMN, None) == OutputFormat.SVG


@pytest.mark.parametrize(
    "value, expected",
    [
        ("sequence", DiagramType.PLANTUML),
        ("Flowchart", DiagramType.MERMAID),
        ("dot", DiagramType.GRAPHVIZ),
        ("c4", DiagramType.C4PLANTUML),
        (" mermaid ", DiagramType.MERMAID),
    ],
)
def test_resolve_diagram_type_aliases(value, expected):
    assert resolve_diagram_type(value) == expected


def test_resolve_unknown_type_does_not_echo_value():
    with pytest.raises(ValueError) as exc_info:
        resolve_diagram_type("<script>")
    assert "<script>" not in str(exc_info.value)


def test_format_spec_media_types():
    assert format_spec(OutputFormat.SVG).media_type == "image/svg+xml"
    assert format_spec(OutputFormat.JPEG).extension == "jpg"
