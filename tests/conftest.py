import pytest

from filesystem import DictFileSystem
from interpreter import RenderOptions, parse_template, render


@pytest.fixture
def render_text():
    def _render(source, environment=None, partials=None, **options):
        template = parse_template(source)
        output, _errors = render(
            template,
            environment,
            RenderOptions(**options),
            file_system=DictFileSystem(partials or {}),
        )
        return output

    return _render
