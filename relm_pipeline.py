# relm_pipeline.py
# Builds the three bank services and deploys them as one release.
from __future__ import annotations

from relm.dsl import pipeline, service


def pipelines():
    return [
        pipeline(
            "bank",
            service("client", context="services/client", repository="bank/client"),
            service("account", context="services/account", repository="bank/account"),
            service(
                "gateway",
                context="services/gateway",
                repository="bank/gateway",
                # shared protobufs change the gateway image too
                inputs=["services/gateway", "proto/**/*.proto"],
            ),
            chart="charts/bank",
            release="bank",
            namespace="bank",
            paths=["services/**", "proto/**", "charts/bank/**"],
        ),
        pipeline(
            "bank-staging",
            service("client", context="services/client", repository="bank/client"),
            service("account", context="services/account", repository="bank/account"),
            service("gateway", context="services/gateway", repository="bank/gateway"),
            chart="charts/bank",
            release="bank-staging",
            namespace="bank-staging",
            environment="staging",
            set_values=["gateway.env.LOG_LEVEL=debug"],
        ),
    ]
