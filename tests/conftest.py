from tests.fixtures.rollout_fixtures import (  # noqa: F401
    compute,
    ledger,
    load_balancer,
    machine,
    machine_factory,
    settings,
)
