"""
stratum/providers/schemas.py

Built-in resource schemas for the simulated providers, covering the resource
types of the bundled web server configuration.
"""

from typing import List

from stratum.providers.base import ResourceSchema

AWS_INSTANCE = ResourceSchema(
    type="aws_instance",
    force_new=frozenset({"ami", "availability_zone", "key_name", "subnet_id", "user_data"}),
    computed=frozenset({"arn", "instance_state", "private_ip", "public_dns", "public_ip"}),
)

AWS_SECURITY_GROUP = ResourceSchema(
    type="aws_security_group",
    force_new=frozenset({"name", "description", "vpc_id"}),
    computed=frozenset({"arn", "owner_id"}),
)

AWS_KEY_PAIR = ResourceSchema(
    type="aws_key_pair",
    force_new=frozenset({"key_name", "public_key"}),
    computed=frozenset({"arn", "fingerprint", "key_pair_id"}),
)

BUILTIN_SCHEMAS: List[ResourceSchema] = [AWS_INSTANCE, AWS_SECURITY_GROUP, AWS_KEY_PAIR]
