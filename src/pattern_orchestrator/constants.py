"""Shared constants for the pattern orchestrator."""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Stage names
# ---------------------------------------------------------------------------
STAGE_INFRA = "infra_deploy"
STAGE_SECRETS = "secrets_load"
STAGE_OPERATORS = "operators"
STAGE_CONTROLLER = "controller_deploy"
STAGE_APPLICATIONS = "applications"

ALL_STAGES = [
    STAGE_INFRA,
    STAGE_SECRETS,
    STAGE_OPERATORS,
    STAGE_CONTROLLER,
    STAGE_APPLICATIONS,
]

STAGE_TITLES: dict[str, str] = {
    STAGE_INFRA: "INFRASTRUCTURE DEPLOYMENT",
    STAGE_SECRETS: "SECRETS LOADING",
    STAGE_OPERATORS: "OPERATORS DEPLOYMENT",
    STAGE_CONTROLLER: "PATTERN CR DEPLOYMENT",
    STAGE_APPLICATIONS: "ARGOCD APPLICATIONS",
}

SECRETS_STATUS_ID = "secrets"

# ---------------------------------------------------------------------------
# Cluster resource kinds
# ---------------------------------------------------------------------------
KIND_SUBSCRIPTION = "subscription.operators.coreos.com"
KIND_CSV = "clusterserviceversion.operators.coreos.com"
KIND_INSTALLPLAN = "installplan.operators.coreos.com"
KIND_APPLICATION = "application.argoproj.io"
KIND_ARGOCD = "argocd.argoproj.io"
KIND_NAMESPACE = "namespace"
KIND_PATTERN = "pattern.gitops.hybrid-cloud-patterns.io"
KIND_POD = "pod"

SUBSCRIPTION_READY_STATE = "AtLatestKnown"
SYNC_STATUS_SYNCED = "Synced"
SYNC_STATUS_OUT_OF_SYNC = "OutOfSync"
HEALTH_STATUS_HEALTHY = "Healthy"

GITOPS_NAMESPACE = "openshift-gitops"
OPERATORS_NAMESPACE = "openshift-operators"

# ---------------------------------------------------------------------------
# Namespace protection -- fixed, never taken from configuration
# ---------------------------------------------------------------------------
PROTECTED_NAMESPACE_PREFIXES: tuple[str, ...] = ("openshift-", "kube-")
PROTECTED_NAMESPACE_NAMES: frozenset[str] = frozenset(
    {
        "default",
        "openshift",
        "kube-system",
        "kube-public",
        "kube-node-lease",
        "platform-system",
    }
)

# ---------------------------------------------------------------------------
# Discovery defaults
# ---------------------------------------------------------------------------
INFRASTRUCTURE_DEFAULT_NAMESPACES: dict[str, str] = {
    "vault-app": "vault",
    "pattern-cr": OPERATORS_NAMESPACE,
}
CONTROLLER_DEFAULT_NAMESPACE = OPERATORS_NAMESPACE
OPERATOR_DEFAULT_NAMESPACE = OPERATORS_NAMESPACE

VALUES_HUB_FILE = "values-hub.yaml"
VALUES_GLOBAL_FILE = "values-global.yaml"
DEFAULT_CONFIG_FILE = "common/pattern-config.yaml"
DEFAULT_SECRETS_SCRIPT = "common/scripts/process-secrets.sh"

# ---------------------------------------------------------------------------
# Audit log categories
# ---------------------------------------------------------------------------
LOG_DISCOVERY = "discovery"
LOG_DEPLOYMENT = "deployment"
LOG_UNINSTALL = "uninstall"
LOG_CATEGORIES = (LOG_DISCOVERY, LOG_DEPLOYMENT, LOG_UNINSTALL)
LOG_SESSION_MAX = 999

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_RESIDUE = 2
