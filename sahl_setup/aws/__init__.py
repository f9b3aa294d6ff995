"""
AWS provisioning: Config recorder, Security Hub and the read-only IAM principal.
"""

from .iam import IAMProvisioner
from .security_services import ConfigRecorderProvisioner, SecurityHubProvisioner

__all__ = ['IAMProvisioner', 'ConfigRecorderProvisioner', 'SecurityHubProvisioner']
