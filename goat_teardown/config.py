import os
from dataclasses import dataclass, field
from typing import List, Optional

from botocore.config import Config

DEFAULT_TAG_KEY = 'Project'
DEFAULT_TAG_VALUE = 'AWSGoat'
DEFAULT_REGION = 'eu-west-3'

# Terraform state lives here; never delete it
STATE_BUCKET_PREFIX = 'do-not-delete-awsgoat-state-files-'

ALB_PREFIX = 'aws-goat-m2-alb'
TARGET_GROUP_PREFIX = 'aws-goat-m2-tg'
TASK_DEFINITION_FAMILY = 'ECS-Lab-Task-definition'
DB_SUBNET_GROUP_PREFIX = 'database-subnets'
IGW_NAME_PREFIX = 'My-VPC-IGW'

SECURITY_GROUP_PREFIXES = (
    'ECS-SG',
    'Database-Security-Group',
    'Load-Balancer-SG',
    'aws-goat-m2-sg',
    'rds-db-sg',
    'aws-goat-db-sg',
)

IAM_ROLE_PREFIXES = (
    'blog_app_lambda',
    'blog_app_lambda_data',
    'AWS_GOAT_ROLE',
    'ecs-instance-role',
    'ec2Deployer-role',
    'ecs-task-role',
)

IAM_POLICY_PREFIXES = (
    'lambda-data-policies',
    'dev-ec2-lambda-policies',
    'aws-goat-instance-policy',
    'aws-goat-instance-boundary-policy',
    'ec2DeployerAdmin-policy',
)

MODULES = ('module-1', 'module-2')

BOTO_CONFIG = Config(retries={'max_attempts': 10, 'mode': 'standard'})


def student_suffix(student_id):
    """Name suffix for a student's copy of a resource ('' for the default workspace)."""
    if not student_id or student_id == 'default':
        return ''
    return f'-{student_id}'


@dataclass
class Settings:
    tag_key: str = DEFAULT_TAG_KEY
    tag_value: str = DEFAULT_TAG_VALUE
    regions: List[str] = field(default_factory=lambda: [DEFAULT_REGION])
    account_id: Optional[str] = None

    @classmethod
    def from_env(cls, environ=None):
        env = os.environ if environ is None else environ
        return cls(
            tag_key=env.get('TAG_KEY') or DEFAULT_TAG_KEY,
            tag_value=env.get('TAG_VALUE') or DEFAULT_TAG_VALUE,
            regions=[env.get('AWS_REGION') or DEFAULT_REGION],
            account_id=env.get('ACCOUNT_ID') or None,
        )

    @property
    def region(self):
        return self.regions[0]

    def has_tag(self, tags):
        """True when a Key/Value tag list or a plain mapping carries the project tag."""
        if not tags:
            return False
        if isinstance(tags, dict):
            return tags.get(self.tag_key) == self.tag_value
        for tag in tags:
            key = tag.get('Key', tag.get('key'))
            value = tag.get('Value', tag.get('value'))
            if key == self.tag_key and value == self.tag_value:
                return True
        return False

    def tag_filter(self):
        return {'Name': f'tag:{self.tag_key}', 'Values': [self.tag_value]}
