from __future__ import annotations

import pytest

from kubeconfig_controller.tests.factories import make_ca_pem


@pytest.fixture(scope="session")
def ca_pem() -> bytes:
    return make_ca_pem()
