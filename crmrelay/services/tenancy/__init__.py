from crmrelay.services.tenancy.resolver import TenantResolution, TenantResolver
from crmrelay.services.tenancy.strategies import (
    AdoptionStrategy,
    DefaultTenantProvisioner,
    DirectCompanyLookup,
    MajorityVoteMapping,
    MappingProposal,
    ProvisionStrategy,
    TenantProvisioner,
    TenantResolutionStrategy,
    UserBindingStrategy,
    default_strategies,
)

__all__ = [
    "TenantResolution",
    "TenantResolver",
    "TenantResolutionStrategy",
    "TenantProvisioner",
    "DefaultTenantProvisioner",
    "DirectCompanyLookup",
    "UserBindingStrategy",
    "AdoptionStrategy",
    "ProvisionStrategy",
    "MajorityVoteMapping",
    "MappingProposal",
    "default_strategies",
]
