"""
Re-sync Terraform state with resources that already exist in AWS.

A partially applied module leaves resources behind that Terraform no longer
tracks, and the next apply fails with EntityAlreadyExists / VpcLimitExceeded.
The importer looks those resources up by their per-student names and imports
the ones missing from the student's workspace. It is safe to run before every
apply: an import that fails is ignored and apply creates the resource.
"""

import logging
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from goat_teardown import config
from goat_teardown.terraform import Terraform, TerraformError

logger = logging.getLogger(__name__)

PRESENT = 'present'
IMPORTED = 'imported'
FAILED = 'failed'


class TerraformImporter:
    def __init__(self, settings, module, student_id='default', root='.', session=None, terraform=None):
        if module not in config.MODULES:
            raise ValueError(f"Unknown module: {module}")
        self.settings = settings
        self.module = module
        self.student_id = student_id or 'default'
        self.suffix = config.student_suffix(self.student_id)
        self.module_dir = Path(root) / 'modules' / module
        self.session = session or boto3.Session()
        self.terraform = terraform or Terraform(self.module_dir)
        self.imports = []

    def client(self, service):
        return self.session.client(service, region_name=self.settings.region, config=config.BOTO_CONFIG)

    def named(self, base):
        return f'{base}{self.suffix}'

    def resolve_account_id(self):
        if self.settings.account_id:
            return self.settings.account_id
        try:
            return self.client('sts').get_caller_identity()['Account']
        except (BotoCoreError, ClientError) as e:
            logger.debug(f"Could not resolve account id: {e}")
            return None

    def run_import(self, address, resource_id):
        """Import `resource_id` at `address` unless the address is already managed"""
        if self.terraform.in_state(address):
            self.imports.append((address, resource_id, PRESENT))
            return PRESENT
        variables = {'student_id': self.student_id, 'region': self.settings.region}
        outcome = IMPORTED if self.terraform.import_resource(address, resource_id, variables) else FAILED
        logger.info(f"{address} <- {resource_id}: {outcome}")
        self.imports.append((address, resource_id, outcome))
        return outcome

    def import_found(self, address, resource_id):
        if resource_id:
            self.run_import(address, resource_id)

    @staticmethod
    def first(call, key, field=None, **kwargs):
        """First `field` of the `key` list returned by `call`, None when absent or not found"""
        try:
            items = call(**kwargs).get(key) or []
        except ClientError as e:
            logger.debug(f"Lookup failed: {e}")
            return None
        if not items:
            return None
        return items[0] if field is None else items[0].get(field)

    def run(self):
        """Import every known resource of the module; returns the import records or None when skipped"""
        if not self.module_dir.is_dir():
            raise TerraformError(f"Module directory not found: {self.module_dir}")

        account_id = self.resolve_account_id()
        if not account_id:
            logger.warning("ACCOUNT_ID not set and could not get from AWS; skipping imports.")
            return None

        self.terraform.select_workspace(self.student_id)

        if self.module == 'module-2':
            self.import_module_2(account_id)
            logger.info("Import step finished (module-2).")
        else:
            logger.info(f"Import step finished ({self.module}, no imports defined).")
        return self.imports

    def import_module_2(self, account_id):
        ec2 = self.client('ec2')
        elbv2 = self.client('elbv2')
        ecs = self.client('ecs')

        # VPC first: re-creating it runs into VpcLimitExceeded
        vpc_id = self.first(ec2.describe_vpcs, 'Vpcs', 'VpcId',
                            Filters=[{'Name': 'tag:Name', 'Values': [self.named('AWS_GOAT_VPC')]}])
        self.import_found('aws_vpc.lab-vpc', vpc_id)

        policy_arn = f'arn:aws:iam::{account_id}:policy/'
        self.run_import('aws_iam_policy.ecs_instance_policy', policy_arn + self.named('aws-goat-instance-policy'))
        self.run_import('aws_iam_policy.instance_boundary_policy',
                        policy_arn + self.named('aws-goat-instance-boundary-policy'))
        self.run_import('aws_iam_role.ec2-deployer-role', self.named('ec2Deployer-role'))
        self.run_import('aws_iam_policy.ec2_deployer_admin_policy', policy_arn + self.named('ec2DeployerAdmin-policy'))
        self.run_import('aws_iam_role.ecs-task-role', self.named('ecs-task-role'))
        self.run_import('aws_iam_role.ecs-instance-role', self.named('ecs-instance-role'))
        self.run_import('aws_iam_instance_profile.ec2-deployer-profile', self.named('ec2Deployer'))
        self.run_import('aws_iam_instance_profile.ecs-instance-profile', self.named('ecs-instance-profile'))
        self.run_import('aws_secretsmanager_secret.rds_creds', self.named('RDS_CREDS'))
        self.run_import('aws_db_subnet_group.database-subnet-group', self.named('database-subnets'))
        self.run_import('aws_db_instance.database-instance', self.named('aws-goat-db'))

        if vpc_id:
            self.import_vpc_members(ec2, vpc_id)
        else:
            logger.info(f"VPC {self.named('AWS_GOAT_VPC')} not found; skipping VPC-scoped imports")

        alb_arn = self.first(elbv2.describe_load_balancers, 'LoadBalancers', 'LoadBalancerArn',
                             Names=[self.named('aws-goat-m2-alb')])
        self.import_found('aws_alb.application_load_balancer', alb_arn)
        tg_arn = self.first(elbv2.describe_target_groups, 'TargetGroups', 'TargetGroupArn',
                            Names=[self.named('aws-goat-m2-tg')])
        self.import_found('aws_lb_target_group.target_group', tg_arn)
        if alb_arn:
            listener_arn = self.first(elbv2.describe_listeners, 'Listeners', 'ListenerArn', LoadBalancerArn=alb_arn)
            self.import_found('aws_lb_listener.listener', listener_arn)

        cluster = self.named('ecs-lab-cluster')
        self.run_import('aws_ecs_cluster.cluster', cluster)
        task_arn = self.first(ecs.list_task_definitions, 'taskDefinitionArns',
                              familyPrefix=self.named(config.TASK_DEFINITION_FAMILY), sort='DESC', maxResults=1)
        self.import_found('aws_ecs_task_definition.task_definition', task_arn)
        self.run_import('aws_ecs_service.worker', f"{cluster}/{self.named('ecs_service_worker')}")

        lt_id = self.first(ec2.describe_launch_templates, 'LaunchTemplates', 'LaunchTemplateId',
                           Filters=[{'Name': 'tag:Name', 'Values': [self.named('ecs-launch-template')]}])
        self.import_found('aws_launch_template.ecs_launch_template', lt_id)
        self.run_import('aws_autoscaling_group.ecs_asg', self.named('ECS-lab-asg'))

    def import_vpc_members(self, ec2, vpc_id):
        """Security groups, subnets, gateway and route table of the lab VPC (imported by id)"""
        in_vpc = {'Name': 'vpc-id', 'Values': [vpc_id]}

        security_groups = (
            ('aws_security_group.ecs_sg', 'ECS-SG'),
            ('aws_security_group.database-security-group', 'Database-Security-Group'),
            ('aws_security_group.load_balancer_security_group', 'Load-Balancer-SG'),
        )
        for address, name in security_groups:
            sg_id = self.first(ec2.describe_security_groups, 'SecurityGroups', 'GroupId',
                               Filters=[in_vpc, {'Name': 'group-name', 'Values': [self.named(name)]}])
            self.import_found(address, sg_id)

        for address, name in (('aws_subnet.lab-subnet-public-1', 'lab-subnet-public-1'),
                              ('aws_subnet.lab-subnet-public-1b', 'lab-subnet-public-1b')):
            subnet_id = self.first(ec2.describe_subnets, 'Subnets', 'SubnetId',
                                   Filters=[in_vpc, {'Name': 'tag:Name', 'Values': [self.named(name)]}])
            self.import_found(address, subnet_id)

        igw_id = self.first(ec2.describe_internet_gateways, 'InternetGateways', 'InternetGatewayId',
                            Filters=[{'Name': 'attachment.vpc-id', 'Values': [vpc_id]}])
        self.import_found('aws_internet_gateway.my_vpc_igw', igw_id)
        rt_id = self.first(ec2.describe_route_tables, 'RouteTables', 'RouteTableId',
                           Filters=[in_vpc, {'Name': 'tag:Name', 'Values': [self.named('Public-Subnet-RT')]}])
        self.import_found('aws_route_table.my_vpc_us_east_1_public_rt', rt_id)
