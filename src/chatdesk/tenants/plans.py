"""Plan catalog: modules, feature strings and numeric limits per plan.

A limit key missing from ``Plan.limits`` means unbounded. Monthly counters
(``maxConversations``, ``monthlyMessages``) restart each billing cycle; the
others are gauges that track live resources.
"""

from typing import Any, NamedTuple

MODULES = ("chat", "crm", "hrm")

LIMIT_KEYS = (
    "maxUsers",
    "maxAgents",
    "maxConversations",
    "monthlyMessages",
    "maxStorageMB",
    "maxFileSizeMB",
)

MONTHLY_KEYS = frozenset({"maxConversations", "monthlyMessages"})

# Keys enforced per request rather than accumulated.
CEILING_KEYS = frozenset({"maxFileSizeMB"})

TRIAL_DAYS = 14


class Plan(NamedTuple):
    level: str
    features: frozenset
    limits: dict
    modules: tuple
    monthly_price: float
    yearly_price: float

    def module_map(self) -> dict[str, Any]:
        """Render the plan's modules in the tenant storage shape."""
        return {
            name: {
                "enabled": name in self.modules,
                "features": sorted(f.split(".", 1)[1] for f in self.features if f.startswith(f"{name}.")),
            }
            for name in MODULES
        }


_CHAT_BASIC = frozenset({"chat.widget", "chat.history", "chat.transcripts"})
_CHAT_PRO = _CHAT_BASIC | {"chat.queue", "chat.file_upload", "chat.branding"}
_CRM = frozenset({"crm.contacts", "crm.pipelines"})
_HRM = frozenset({"hrm.staff", "hrm.schedules"})

PLANS: dict[str, Plan] = {
    "trial": Plan(
        level="trial",
        features=_CHAT_BASIC | {"chat.file_upload"},
        limits={
            "maxUsers": 5,
            "maxAgents": 2,
            "maxConversations": 100,
            "monthlyMessages": 1_000,
            "maxStorageMB": 1_024,
            "maxFileSizeMB": 10,
        },
        modules=("chat",),
        monthly_price=0.0,
        yearly_price=0.0,
    ),
    "starter": Plan(
        level="starter",
        features=_CHAT_BASIC | {"chat.file_upload"},
        limits={
            "maxUsers": 10,
            "maxAgents": 3,
            "maxConversations": 1_000,
            "monthlyMessages": 10_000,
            "maxStorageMB": 5_120,
            "maxFileSizeMB": 10,
        },
        modules=("chat",),
        monthly_price=49.0,
        yearly_price=490.0,
    ),
    "professional": Plan(
        level="professional",
        features=_CHAT_PRO | _CRM,
        limits={
            "maxUsers": 50,
            "maxAgents": 10,
            "maxConversations": 10_000,
            "monthlyMessages": 50_000,
            "maxStorageMB": 20_480,
            "maxFileSizeMB": 25,
        },
        modules=("chat", "crm"),
        monthly_price=99.0,
        yearly_price=990.0,
    ),
    "enterprise": Plan(
        level="enterprise",
        features=_CHAT_PRO | _CRM | _HRM,
        limits={
            "maxStorageMB": 102_400,
            "maxFileSizeMB": 100,
        },
        modules=MODULES,
        monthly_price=299.0,
        yearly_price=2_990.0,
    ),
}


def get_plan(level: str) -> Plan:
    try:
        return PLANS[level]
    except KeyError:
        raise ValueError(f"Unknown plan: {level}") from None


def price_for(level: str, billing_cycle: str) -> float:
    plan = get_plan(level)
    return plan.yearly_price if billing_cycle == "yearly" else plan.monthly_price
