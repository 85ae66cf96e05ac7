"""
Tag-based teardown of AWSGoat deployments.

Deletes every resource carrying the project tag (Project=AWSGoat by default),
plus the untagged leftovers recognised by their name prefixes, in dependency
order. Every delete is best effort: failures are logged and the run moves on
to the next resource, so the teardown can simply be re-run.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

import boto3
from botocore.exceptions import ClientError, WaiterError

from goat_teardown import config

logger = logging.getLogger(__name__)

ACTIVE_INSTANCE_STATES = ['pending', 'running', 'stopping', 'stopped']
SECURITY_GROUP_PASSES = 5
DESCRIBE_TAGS_BATCH = 20


class AWSGoatCleaner:
    def __init__(self, settings, session=None, dry_run=False, session_factory=boto3.Session):
        self.settings = settings
        self.session_factory = session_factory
        self.session = session or session_factory()
        self.dry_run = dry_run
        self.deleted_resources = []
        self.failed_resources = []
        # boto3 sessions are not thread safe: each region worker gets its own
        self._local = threading.local()

    def log(self, message, level="INFO"):
        logger.log(getattr(logging, level), message)

    def client(self, service, region=None):
        session = getattr(self._local, 'session', None) or self.session
        return session.client(service, region_name=region or self.settings.region, config=config.BOTO_CONFIG)

    def pause(self, seconds):
        if not self.dry_run:
            time.sleep(seconds)

    @staticmethod
    def paginate(client, operation, key, **kwargs):
        """Collect `key` from every page of a paginated call"""
        items = []
        for page in client.get_paginator(operation).paginate(**kwargs):
            items.extend(page.get(key, []))
        return items

    def delete(self, region, resource_type, resource_id, call, **kwargs):
        """Run one delete call; failures are recorded, never raised"""
        if self.dry_run:
            self.log(f"[dry-run] Would delete {resource_type}: {resource_id} ({region})")
            return True
        try:
            call(**kwargs)
        except ClientError as e:
            self.log(f"Could not delete {resource_type} {resource_id} in {region}: {str(e)}", "WARNING")
            self.failed_resources.append((region, resource_type, resource_id))
            return False
        self.log(f"Deleted {resource_type}: {resource_id}")
        self.deleted_resources.append((region, resource_type, resource_id))
        return True

    def attempt(self, description, call, **kwargs):
        """Best-effort preparation step (detach, scale down, ...)"""
        if self.dry_run:
            self.log(f"[dry-run] Would {description}", "DEBUG")
            return
        try:
            call(**kwargs)
        except ClientError as e:
            self.log(f"Could not {description}: {str(e)}", "DEBUG")

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def get_tagged_resources(self, region=None):
        """Return every ARN carrying the project tag (Resource Groups Tagging API)"""
        tagging = self.client('resourcegroupstaggingapi', region)
        mappings = self.paginate(
            tagging, 'get_resources', 'ResourceTagMappingList',
            TagFilters=[{'Key': self.settings.tag_key, 'Values': [self.settings.tag_value]}]
        )
        return [m['ResourceARN'] for m in mappings if m.get('ResourceARN')]

    def report_leftovers(self):
        """Log tagged resources that survived the teardown"""
        leftovers = []
        for region in self.settings.regions:
            try:
                arns = self.get_tagged_resources(region)
            except ClientError as e:
                self.log(f"get-resources failed in {region} (check permissions): {str(e)}", "WARNING")
                continue
            for arn in arns:
                self.log(f"Still tagged (may be deleting): {arn}", "WARNING")
            leftovers.extend(arns)
        return leftovers

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------

    def cleanup_ec2_instances(self, region):
        """Terminate tagged EC2 instances and wait for them"""
        ec2 = self.client('ec2', region)

        try:
            reservations = self.paginate(
                ec2, 'describe_instances', 'Reservations',
                Filters=[
                    self.settings.tag_filter(),
                    {'Name': 'instance-state-name', 'Values': ACTIVE_INSTANCE_STATES},
                ]
            )
        except ClientError as e:
            self.log(f"EC2 instance listing error in {region}: {str(e)}", "ERROR")
            return

        instance_ids = [i['InstanceId'] for r in reservations for i in r['Instances']]
        if not instance_ids:
            return

        if self.dry_run:
            self.log(f"[dry-run] Would terminate EC2 instances in {region}: {' '.join(instance_ids)}")
            return
        self.log(f"Terminating EC2 instances in {region}: {' '.join(instance_ids)}")
        try:
            ec2.terminate_instances(InstanceIds=instance_ids)
        except ClientError as e:
            self.log(f"Could not terminate instances in {region}: {str(e)}", "WARNING")
            self.failed_resources.extend([(region, 'EC2 Instance', iid) for iid in instance_ids])
            return
        self.deleted_resources.extend([(region, 'EC2 Instance', iid) for iid in instance_ids])

        self.log(f"Waiting for instances to terminate in {region}...")
        waiter = ec2.get_waiter('instance_terminated')
        try:
            waiter.wait(InstanceIds=instance_ids, WaiterConfig={'Delay': 15, 'MaxAttempts': 40})
        except WaiterError as e:
            self.log(f"Some instances taking longer to terminate in {region}: {str(e)}", "WARNING")

    def cleanup_ecs(self, region):
        """Delete services and clusters of tagged ECS clusters"""
        ecs = self.client('ecs', region)

        try:
            cluster_arns = self.paginate(ecs, 'list_clusters', 'clusterArns')
        except ClientError as e:
            self.log(f"ECS cleanup error in {region}: {str(e)}", "ERROR")
            return

        for cluster_arn in cluster_arns:
            cluster_name = cluster_arn.split('/')[-1]
            try:
                tags = ecs.list_tags_for_resource(resourceArn=cluster_arn).get('tags', [])
                if not self.settings.has_tag(tags):
                    continue
                service_arns = self.paginate(ecs, 'list_services', 'serviceArns', cluster=cluster_arn)
            except ClientError as e:
                self.log(f"Could not inspect ECS cluster {cluster_name}: {str(e)}", "WARNING")
                continue

            for service_arn in service_arns:
                service_name = service_arn.split('/')[-1]
                self.attempt(f"scale ECS service {service_name} to 0",
                             ecs.update_service, cluster=cluster_name, service=service_name, desiredCount=0)
                self.delete(region, 'ECS Service', service_name,
                            ecs.delete_service, cluster=cluster_name, service=service_name, force=True)

            self.delete(region, 'ECS Cluster', cluster_name, ecs.delete_cluster, cluster=cluster_name)

    def cleanup_ecs_task_definitions(self, region):
        """Deregister task definitions; they outlive their service and cluster

        list_task_definitions matches its familyPrefix against the whole family
        name, so the per-student families are found through the family listing
        first.
        """
        ecs = self.client('ecs', region)

        try:
            families = self.paginate(ecs, 'list_task_definition_families', 'families',
                                     familyPrefix=config.TASK_DEFINITION_FAMILY, status='ACTIVE')
        except ClientError as e:
            self.log(f"ECS task definition listing error in {region}: {str(e)}", "ERROR")
            return

        for family in families:
            try:
                arns = self.paginate(ecs, 'list_task_definitions', 'taskDefinitionArns', familyPrefix=family)
            except ClientError as e:
                self.log(f"Could not list task definitions of {family} in {region}: {str(e)}", "WARNING")
                continue
            for arn in arns:
                self.delete(region, 'ECS Task Definition', arn, ecs.deregister_task_definition, taskDefinition=arn)

    def cleanup_autoscaling(self, region):
        """Delete tagged auto scaling groups, then tagged launch templates"""
        autoscaling = self.client('autoscaling', region)
        ec2 = self.client('ec2', region)

        try:
            groups = self.paginate(autoscaling, 'describe_auto_scaling_groups', 'AutoScalingGroups')
            for group in groups:
                if not self.settings.has_tag(group.get('Tags')):
                    continue
                name = group['AutoScalingGroupName']
                self.attempt(f"scale ASG {name} to 0", autoscaling.update_auto_scaling_group,
                             AutoScalingGroupName=name, MinSize=0, MaxSize=0, DesiredCapacity=0)
                self.delete(region, 'Auto Scaling Group', name, autoscaling.delete_auto_scaling_group,
                            AutoScalingGroupName=name, ForceDelete=True)
        except ClientError as e:
            self.log(f"Auto Scaling cleanup error in {region}: {str(e)}", "ERROR")

        self.pause(5)

        try:
            templates = self.paginate(ec2, 'describe_launch_templates', 'LaunchTemplates')
            for template in templates:
                if self.settings.has_tag(template.get('Tags')):
                    self.delete(region, 'Launch Template', template['LaunchTemplateId'],
                                ec2.delete_launch_template, LaunchTemplateId=template['LaunchTemplateId'])
        except ClientError as e:
            self.log(f"Launch template cleanup error in {region}: {str(e)}", "ERROR")

    # ------------------------------------------------------------------
    # Load balancing
    # ------------------------------------------------------------------

    def _elbv2_tags(self, elbv2, region, arns):
        """describe_load_balancers does not return tags; fetch them in batches.

        A batch whose tags cannot be read is left out, so those resources are
        only matched by name.
        """
        tags = {}
        for start in range(0, len(arns), DESCRIBE_TAGS_BATCH):
            batch = arns[start:start + DESCRIBE_TAGS_BATCH]
            try:
                descriptions = elbv2.describe_tags(ResourceArns=batch)['TagDescriptions']
            except ClientError as e:
                self.log(f"Could not read ELB tags in {region}: {str(e)}", "WARNING")
                continue
            for description in descriptions:
                tags[description['ResourceArn']] = description.get('Tags', [])
        return tags

    def _elbv2_matches(self, elbv2, region, resources, arn_key, name_key, prefix):
        """Resources named with `prefix`, then the rest by tag"""
        matched = [r for r in resources if r[name_key].startswith(prefix)]
        others = [r for r in resources if not r[name_key].startswith(prefix)]
        tags = self._elbv2_tags(elbv2, region, [r[arn_key] for r in others])
        return matched + [r for r in others if self.settings.has_tag(tags.get(r[arn_key]))]

    def cleanup_load_balancers(self, region):
        """Delete module-2 ALBs and target groups, by name prefix or by tag"""
        elbv2 = self.client('elbv2', region)

        try:
            load_balancers = self.paginate(elbv2, 'describe_load_balancers', 'LoadBalancers')
        except ClientError as e:
            self.log(f"Load Balancer cleanup error in {region}: {str(e)}", "ERROR")
        else:
            for lb in self._elbv2_matches(elbv2, region, load_balancers,
                                          'LoadBalancerArn', 'LoadBalancerName', config.ALB_PREFIX):
                self.delete(region, 'Load Balancer', lb['LoadBalancerName'],
                            elbv2.delete_load_balancer, LoadBalancerArn=lb['LoadBalancerArn'])

        try:
            target_groups = self.paginate(elbv2, 'describe_target_groups', 'TargetGroups')
        except ClientError as e:
            self.log(f"Target Group cleanup error in {region}: {str(e)}", "ERROR")
            return

        for tg in self._elbv2_matches(elbv2, region, target_groups,
                                      'TargetGroupArn', 'TargetGroupName', config.TARGET_GROUP_PREFIX):
            self.delete(region, 'Target Group', tg['TargetGroupName'],
                        elbv2.delete_target_group, TargetGroupArn=tg['TargetGroupArn'])

    # ------------------------------------------------------------------
    # Data stores
    # ------------------------------------------------------------------

    def cleanup_rds(self, region):
        """Delete tagged RDS instances without final snapshot"""
        rds = self.client('rds', region)

        try:
            instances = self.paginate(rds, 'describe_db_instances', 'DBInstances')
        except ClientError as e:
            self.log(f"RDS cleanup error in {region}: {str(e)}", "ERROR")
            return False

        deleted = False
        for instance in instances:
            if not self.settings.has_tag(instance.get('TagList')):
                continue
            db_id = instance['DBInstanceIdentifier']
            deleted |= self.delete(region, 'RDS Instance', db_id, rds.delete_db_instance,
                                   DBInstanceIdentifier=db_id,
                                   SkipFinalSnapshot=True,
                                   DeleteAutomatedBackups=True)
        return deleted

    def cleanup_db_subnet_groups(self, region):
        """Delete DB subnet groups; run after the instances that use them"""
        rds = self.client('rds', region)

        try:
            groups = self.paginate(rds, 'describe_db_subnet_groups', 'DBSubnetGroups')
        except ClientError as e:
            self.log(f"DB subnet group cleanup error in {region}: {str(e)}", "ERROR")
            return

        for group in groups:
            name = group['DBSubnetGroupName']
            matched = name.startswith(config.DB_SUBNET_GROUP_PREFIX)
            if not matched and group.get('DBSubnetGroupArn'):
                try:
                    tags = rds.list_tags_for_resource(ResourceName=group['DBSubnetGroupArn']).get('TagList', [])
                except ClientError as e:
                    self.log(f"Could not read tags of DB subnet group {name}: {str(e)}", "WARNING")
                    continue
                matched = self.settings.has_tag(tags)
            if matched:
                self.delete(region, 'DB Subnet Group', name,
                            rds.delete_db_subnet_group, DBSubnetGroupName=name)

    def cleanup_lambda(self, region):
        """Delete tagged Lambda functions"""
        lambda_client = self.client('lambda', region)

        try:
            functions = self.paginate(lambda_client, 'list_functions', 'Functions')
        except ClientError as e:
            self.log(f"Lambda cleanup error in {region}: {str(e)}", "ERROR")
            return

        for func in functions:
            try:
                tags = lambda_client.list_tags(Resource=func['FunctionArn']).get('Tags', {})
            except ClientError as e:
                self.log(f"Could not read tags of function {func['FunctionName']}: {str(e)}", "WARNING")
                continue
            if self.settings.has_tag(tags):
                self.delete(region, 'Lambda Function', func['FunctionName'],
                            lambda_client.delete_function, FunctionName=func['FunctionName'])

    def cleanup_apigateway(self, region):
        """Delete tagged API Gateway REST APIs"""
        apigateway = self.client('apigateway', region)

        try:
            apis = self.paginate(apigateway, 'get_rest_apis', 'items')
            for api in apis:
                if self.settings.has_tag(api.get('tags')):
                    self.delete(region, 'REST API', api['id'], apigateway.delete_rest_api, restApiId=api['id'])
        except ClientError as e:
            self.log(f"API Gateway cleanup error in {region}: {str(e)}", "ERROR")

    def cleanup_dynamodb(self, region):
        """Delete tagged DynamoDB tables"""
        dynamodb = self.client('dynamodb', region)

        try:
            table_names = self.paginate(dynamodb, 'list_tables', 'TableNames')
        except ClientError as e:
            self.log(f"DynamoDB cleanup error in {region}: {str(e)}", "ERROR")
            return

        for table_name in table_names:
            try:
                table_arn = dynamodb.describe_table(TableName=table_name)['Table']['TableArn']
                tags = dynamodb.list_tags_of_resource(ResourceArn=table_arn).get('Tags', [])
            except ClientError as e:
                self.log(f"Could not read tags of table {table_name}: {str(e)}", "WARNING")
                continue
            if self.settings.has_tag(tags):
                self.delete(region, 'DynamoDB Table', table_name, dynamodb.delete_table, TableName=table_name)

    def cleanup_secrets(self, region):
        """Force-delete tagged secrets (no recovery window)"""
        secretsmanager = self.client('secretsmanager', region)

        try:
            secrets = self.paginate(secretsmanager, 'list_secrets', 'SecretList')
            for secret in secrets:
                if self.settings.has_tag(secret.get('Tags')):
                    self.delete(region, 'Secret', secret['Name'], secretsmanager.delete_secret,
                                SecretId=secret['ARN'], ForceDeleteWithoutRecovery=True)
        except ClientError as e:
            self.log(f"Secrets Manager cleanup error in {region}: {str(e)}", "ERROR")

    # ------------------------------------------------------------------
    # Networking
    # ------------------------------------------------------------------

    def _is_goat_security_group(self, sg):
        if sg['GroupName'] == 'default':
            return False
        if sg['GroupName'].startswith(config.SECURITY_GROUP_PREFIXES):
            return True
        return self.settings.has_tag(sg.get('Tags'))

    def cleanup_security_groups(self, region):
        """Delete security groups by name prefix or tag, several passes for cross-references"""
        ec2 = self.client('ec2', region)

        for attempt in range(1, SECURITY_GROUP_PASSES + 1):
            try:
                groups = [sg for sg in self.paginate(ec2, 'describe_security_groups', 'SecurityGroups')
                          if self._is_goat_security_group(sg)]
            except ClientError as e:
                self.log(f"Security group cleanup error in {region}: {str(e)}", "ERROR")
                return
            if not groups:
                return

            self.log(f"Security group pass {attempt}/{SECURITY_GROUP_PASSES} in {region}: {len(groups)} left")
            remaining = 0
            for sg in groups:
                if not self.delete(region, 'Security Group', f"{sg['GroupName']} ({sg['GroupId']})",
                                   ec2.delete_security_group, GroupId=sg['GroupId']):
                    remaining += 1
            if self.dry_run or not remaining:
                return
            self.pause(2)

    def cleanup_internet_gateways(self, region):
        """Delete internet gateways by tag or Name prefix, detaching them first"""
        ec2 = self.client('ec2', region)

        try:
            gateways = self.paginate(ec2, 'describe_internet_gateways', 'InternetGateways')
        except ClientError as e:
            self.log(f"Internet gateway cleanup error in {region}: {str(e)}", "ERROR")
            return

        for igw in gateways:
            tags = igw.get('Tags', [])
            name = next((t['Value'] for t in tags if t['Key'] == 'Name'), '')
            if not (self.settings.has_tag(tags) or name.startswith(config.IGW_NAME_PREFIX)):
                continue
            igw_id = igw['InternetGatewayId']
            for attachment in igw.get('Attachments', []):
                self.attempt(f"detach {igw_id} from {attachment['VpcId']}", ec2.detach_internet_gateway,
                             InternetGatewayId=igw_id, VpcId=attachment['VpcId'])
            self.delete(region, 'Internet Gateway', igw_id, ec2.delete_internet_gateway, InternetGatewayId=igw_id)

    def cleanup_vpcs(self, region):
        """Delete tagged VPCs with their subnets, gateways, route tables and security groups"""
        ec2 = self.client('ec2', region)

        try:
            vpcs = self.paginate(ec2, 'describe_vpcs', 'Vpcs', Filters=[self.settings.tag_filter()])
        except ClientError as e:
            self.log(f"VPC cleanup error in {region}: {str(e)}", "ERROR")
            return

        for vpc in vpcs:
            vpc_id = vpc['VpcId']
            vpc_filter = [{'Name': 'vpc-id', 'Values': [vpc_id]}]
            self.log(f"Cleaning VPC: {vpc_id}")

            try:
                for subnet in self.paginate(ec2, 'describe_subnets', 'Subnets', Filters=vpc_filter):
                    self.delete(region, 'Subnet', subnet['SubnetId'], ec2.delete_subnet, SubnetId=subnet['SubnetId'])

                igws = self.paginate(ec2, 'describe_internet_gateways', 'InternetGateways',
                                     Filters=[{'Name': 'attachment.vpc-id', 'Values': [vpc_id]}])
                for igw in igws:
                    igw_id = igw['InternetGatewayId']
                    self.attempt(f"detach {igw_id} from {vpc_id}", ec2.detach_internet_gateway,
                                 InternetGatewayId=igw_id, VpcId=vpc_id)
                    self.delete(region, 'Internet Gateway', igw_id, ec2.delete_internet_gateway, InternetGatewayId=igw_id)

                for rt in self.paginate(ec2, 'describe_route_tables', 'RouteTables', Filters=vpc_filter):
                    if not any(assoc.get('Main', False) for assoc in rt.get('Associations', [])):
                        self.delete(region, 'Route Table', rt['RouteTableId'],
                                    ec2.delete_route_table, RouteTableId=rt['RouteTableId'])

                for sg in self.paginate(ec2, 'describe_security_groups', 'SecurityGroups', Filters=vpc_filter):
                    if sg['GroupName'] != 'default':
                        self.delete(region, 'Security Group', f"{sg['GroupName']} ({sg['GroupId']})",
                                    ec2.delete_security_group, GroupId=sg['GroupId'])
            except ClientError as e:
                self.log(f"Error cleaning VPC {vpc_id}: {str(e)}", "ERROR")

            self.delete(region, 'VPC', vpc_id, ec2.delete_vpc, VpcId=vpc_id)

    # ------------------------------------------------------------------
    # Global resources
    # ------------------------------------------------------------------

    def cleanup_s3(self):
        """Empty and delete tagged S3 buckets, sparing the Terraform state bucket"""
        s3 = self.client('s3')
        s3_resource = self.session.resource('s3', region_name=self.settings.region, config=config.BOTO_CONFIG)

        try:
            buckets = s3.list_buckets()['Buckets']
        except ClientError as e:
            self.log(f"S3 cleanup error: {str(e)}", "ERROR")
            return

        for bucket in buckets:
            bucket_name = bucket['Name']
            try:
                tag_set = s3.get_bucket_tagging(Bucket=bucket_name)['TagSet']
            except ClientError:
                # NoSuchTagSet, or a bucket owned by another region/account
                continue
            if not self.settings.has_tag(tag_set):
                continue
            if bucket_name.startswith(config.STATE_BUCKET_PREFIX):
                self.log(f"Skipping state bucket {bucket_name}")
                continue

            if self.dry_run:
                self.log(f"[dry-run] Would empty S3 Bucket: {bucket_name}")
            else:
                self.log(f"Emptying bucket {bucket_name}")
                try:
                    bucket_resource = s3_resource.Bucket(bucket_name)
                    bucket_resource.object_versions.all().delete()
                    bucket_resource.objects.all().delete()
                except ClientError as e:
                    self.log(f"Error emptying bucket {bucket_name}: {str(e)}", "WARNING")
            self.delete('global', 'S3 Bucket', bucket_name, s3.delete_bucket, Bucket=bucket_name)

    def _delete_role(self, iam, role_name):
        try:
            for profile in self.paginate(iam, 'list_instance_profiles_for_role', 'InstanceProfiles', RoleName=role_name):
                profile_name = profile['InstanceProfileName']
                self.attempt(f"remove {role_name} from instance profile {profile_name}",
                             iam.remove_role_from_instance_profile,
                             InstanceProfileName=profile_name, RoleName=role_name)
                self.delete('global', 'IAM Instance Profile', profile_name,
                            iam.delete_instance_profile, InstanceProfileName=profile_name)

            for policy in self.paginate(iam, 'list_attached_role_policies', 'AttachedPolicies', RoleName=role_name):
                self.attempt(f"detach {policy['PolicyArn']} from {role_name}",
                             iam.detach_role_policy, RoleName=role_name, PolicyArn=policy['PolicyArn'])

            for policy_name in self.paginate(iam, 'list_role_policies', 'PolicyNames', RoleName=role_name):
                self.attempt(f"delete inline policy {policy_name} of {role_name}",
                             iam.delete_role_policy, RoleName=role_name, PolicyName=policy_name)
        except ClientError as e:
            self.log(f"Error preparing role {role_name} for deletion: {str(e)}", "WARNING")

        self.delete('global', 'IAM Role', role_name, iam.delete_role, RoleName=role_name)

    def _delete_policy(self, iam, policy_arn):
        try:
            for version in self.paginate(iam, 'list_policy_versions', 'Versions', PolicyArn=policy_arn):
                if not version['IsDefaultVersion']:
                    self.attempt(f"delete version {version['VersionId']} of {policy_arn}",
                                 iam.delete_policy_version, PolicyArn=policy_arn, VersionId=version['VersionId'])
        except ClientError as e:
            self.log(f"Error listing versions of {policy_arn}: {str(e)}", "WARNING")

        self.delete('global', 'IAM Policy', policy_arn, iam.delete_policy, PolicyArn=policy_arn)

    def cleanup_iam_by_tag(self):
        """Delete tagged IAM roles and customer managed policies"""
        iam = self.client('iam')

        try:
            for role in self.paginate(iam, 'list_roles', 'Roles'):
                try:
                    tags = iam.list_role_tags(RoleName=role['RoleName'])['Tags']
                except ClientError:
                    continue
                if self.settings.has_tag(tags):
                    self._delete_role(iam, role['RoleName'])

            for policy in self.paginate(iam, 'list_policies', 'Policies', Scope='Local'):
                try:
                    tags = iam.list_policy_tags(PolicyArn=policy['Arn'])['Tags']
                except ClientError:
                    continue
                if self.settings.has_tag(tags):
                    self._delete_policy(iam, policy['Arn'])
        except ClientError as e:
            self.log(f"IAM cleanup error: {str(e)}", "ERROR")

    def cleanup_iam_by_name(self):
        """Fallback for untagged module-1/module-2 roles and policies"""
        iam = self.client('iam')

        try:
            for role in self.paginate(iam, 'list_roles', 'Roles'):
                if role['RoleName'].startswith(config.IAM_ROLE_PREFIXES):
                    self._delete_role(iam, role['RoleName'])

            for policy in self.paginate(iam, 'list_policies', 'Policies', Scope='Local'):
                if policy['PolicyName'].startswith(config.IAM_POLICY_PREFIXES):
                    self._delete_policy(iam, policy['Arn'])
        except ClientError as e:
            self.log(f"IAM cleanup error: {str(e)}", "ERROR")

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def cleanup_region(self, region):
        """Regional teardown in dependency order, on a session of its own"""
        self.log(f"Starting cleanup for region: {region}")
        self._local.session = self.session_factory()
        try:
            self._cleanup_region(region)
        finally:
            del self._local.session

    def _cleanup_region(self, region):
        self.cleanup_ec2_instances(region)
        self.pause(10)
        self.cleanup_ecs(region)
        self.cleanup_ecs_task_definitions(region)
        self.pause(5)
        self.cleanup_autoscaling(region)
        self.cleanup_load_balancers(region)
        if self.cleanup_rds(region):
            self.pause(15)
        self.cleanup_db_subnet_groups(region)
        self.cleanup_lambda(region)
        self.cleanup_apigateway(region)
        self.cleanup_dynamodb(region)
        self.cleanup_secrets(region)
        # Networking must be last
        self.cleanup_security_groups(region)
        self.cleanup_internet_gateways(region)
        self.cleanup_vpcs(region)

    def run_cleanup(self):
        """Execute the complete teardown and return the deleted resources"""
        self.log("=" * 80)
        self.log(f"Tag-based cleanup ({self.settings.tag_key}={self.settings.tag_value}) "
                 f"in {', '.join(self.settings.regions)}")
        if self.dry_run:
            self.log("DRY RUN MODE: nothing will be deleted")
        self.log("=" * 80)

        with ThreadPoolExecutor(max_workers=min(5, len(self.settings.regions))) as executor:
            futures = {executor.submit(self.cleanup_region, region): region for region in self.settings.regions}

            for future in as_completed(futures):
                region = futures[future]
                try:
                    future.result()
                    self.log(f"Completed cleanup for region: {region}")
                except Exception as e:
                    self.log(f"Failed cleanup for region {region}: {str(e)}", "ERROR")

        # IAM goes last: roles are in use until compute is gone
        self.log("Cleaning up global resources (S3, IAM)...")
        self.cleanup_s3()
        self.cleanup_iam_by_tag()
        self.cleanup_iam_by_name()

        if not self.dry_run:
            self.report_leftovers()
        self.log_summary()
        self.log(f"Tag-based cleanup ({self.settings.tag_key}={self.settings.tag_value}) completed.")
        return self.deleted_resources

    def summary(self):
        """Deleted resource counts keyed by (region, resource type)"""
        counts = {}
        for region, resource_type, _ in self.deleted_resources:
            counts[(region, resource_type)] = counts.get((region, resource_type), 0) + 1
        return counts

    def log_summary(self):
        self.log("Deletion Summary:")
        self.log("-" * 80)
        for (region, resource_type), count in sorted(self.summary().items()):
            self.log(f"  {region:20s} {resource_type:35s} {count:5d}")
        self.log("-" * 80)
        self.log(f"Total resources deleted: {len(self.deleted_resources)}")
        if self.failed_resources:
            self.log(f"Resources that could not be deleted: {len(self.failed_resources)}", "WARNING")
            for region, resource_type, resource_id in self.failed_resources:
                self.log(f"  {region:20s} {resource_type:35s} {resource_id}", "WARNING")
