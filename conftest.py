import pytest


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: needs live catalog, vector store or provider credentials")


def pytest_runtest_setup(item):
    # Skip integration tests by default when marked
    if 'integration' in item.keywords and not item.config.getoption("--run-integration"):
        pytest.skip("skipping integration test (use --run-integration)")


def pytest_addoption(parser):
    parser.addoption("--run-integration", action="store_true", default=False,
                     help="Run tests marked as integration")
