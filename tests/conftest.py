import pytest

import mutate
from exc import TemplateFetchError
from models import SidecarTemplateList


TEMPLATES = {
    "items": [
        {
            "selector": {"injector": "logging"},
            "spec": {
                "containers": [
                    {"name": "fluentd", "image": "fluentd:latest"},
                    {"name": "logrotate", "image": "logrotate:latest"},
                ]
            },
        },
        {
            "selector": {"injector": "proxy"},
            "spec": {"containers": [{"name": "envoy", "image": "envoy:latest"}]},
        },
    ]
}


class FakeProvider:
    calls = 0

    def __init__(self, settings):
        self.settings = settings

    def templates(self):
        FakeProvider.calls += 1
        return SidecarTemplateList.model_validate(TEMPLATES)


class ErrorProvider:
    calls = 0

    def __init__(self, settings):
        self.settings = settings

    def templates(self):
        ErrorProvider.calls += 1
        raise TemplateFetchError("connection refused")


@pytest.fixture(autouse=True)
def reset_calls():
    FakeProvider.calls = 0
    ErrorProvider.calls = 0


@pytest.fixture()
def template_data():
    return TEMPLATES


@pytest.fixture()
def templates():
    return SidecarTemplateList.model_validate(TEMPLATES)


@pytest.fixture()
def app():
    app = mutate.create_app(
        PROVIDER=FakeProvider,
        TESTING=True,
    )
    yield app


@pytest.fixture()
def client(app):
    return app.test_client()
