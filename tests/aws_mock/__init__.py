"""AWS API doubles for handler tests.

moto covers plain create/read/delete round trips. This package covers what
moto cannot script: intermediate states, modification progress, injected
errors and exact call sequences.

Usage:
    from aws_mock import MockEc2Client, client_error

    ec2 = MockEc2Client()
    handler = EbsVolumeHandler(LazyClient.of(ec2))
"""

from .ec2 import MockEc2Client, client_error

__all__ = ["MockEc2Client", "client_error"]
