"""
AWS adapters: VPC networks, EKS clusters and RDS databases via boto3.

Each adapter looks resources up by the managed resource id (VPCs through
their resource_id tag, EKS clusters and RDS instances by name), so repeating
a create_or_update converges an existing object instead of duplicating it.
"""

import logging
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from ..config import ProviderConfig
from ..errors import AdapterFailure, NotFound
from ..models import ResourceKind
from ..tags import base_tags, to_aws_tags
from .base import ProviderAdapter

logger = logging.getLogger(__name__)

VPC_NOT_FOUND = {"InvalidVpcID.NotFound"}
EKS_NOT_FOUND = {"ResourceNotFoundException"}
RDS_NOT_FOUND = {"DBInstanceNotFound", "DBInstanceNotFoundFault"}
EKS_IN_PROGRESS = {"CREATING", "UPDATING"}


def _client(service: str, config: ProviderConfig):
    """Build a boto3 client for the region and profile in config."""
    session = boto3.session.Session(profile_name=config.profile, region_name=config.region)
    return session.client(service, endpoint_url=config.endpoint_url)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class VpcNetworkAdapter(ProviderAdapter):
    kind = ResourceKind.NETWORK

    def create_or_update(self, resource_id: str, parameters: Dict[str, Any], config: ProviderConfig) -> str:
        ec2 = _client("ec2", config)
        try:
            response = ec2.describe_vpcs(
                Filters=[
                    {"Name": "tag:project", "Values": ["strata"]},
                    {"Name": "tag:resource_id", "Values": [resource_id]},
                ]
            )
            existing = response.get("Vpcs", [])

            if existing:
                vpc = existing[0]
                if vpc["CidrBlock"] != parameters["cidr_block"]:
                    raise AdapterFailure(
                        f"VPC {vpc['VpcId']} has CIDR {vpc['CidrBlock']}; "
                        f"changing it to {parameters['cidr_block']} requires replacing the network",
                        resource_id,
                    )
                vpc_id = vpc["VpcId"]
            else:
                vpc = ec2.create_vpc(
                    CidrBlock=parameters["cidr_block"],
                    TagSpecifications=[{"ResourceType": "vpc", "Tags": to_aws_tags(base_tags(resource_id))}],
                )["Vpc"]
                vpc_id = vpc["VpcId"]
                ec2.get_waiter("vpc_available").wait(VpcIds=[vpc_id])
                logger.info(f"Created VPC {vpc_id} for {resource_id}")

            # modify_vpc_attribute accepts a single attribute per call
            ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={"Value": parameters["enable_dns"]})
            ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": parameters["enable_dns"]})
            return vpc_id
        except ClientError as e:
            raise AdapterFailure(f"EC2 call failed for {resource_id}: {e}", resource_id) from e

    def read(self, handle: str, config: ProviderConfig) -> Dict[str, Any]:
        ec2 = _client("ec2", config)
        try:
            vpcs = ec2.describe_vpcs(VpcIds=[handle]).get("Vpcs", [])
            if not vpcs:
                raise NotFound(handle)
            dns = ec2.describe_vpc_attribute(VpcId=handle, Attribute="enableDnsSupport")
        except ClientError as e:
            if _error_code(e) in VPC_NOT_FOUND:
                raise NotFound(handle) from e
            raise AdapterFailure(f"Failed to read VPC {handle}: {e}") from e

        return {
            "cidr_block": vpcs[0]["CidrBlock"],
            "enable_dns": dns["EnableDnsSupport"]["Value"],
        }

    def delete(self, handle: str, config: ProviderConfig) -> None:
        ec2 = _client("ec2", config)
        try:
            ec2.delete_vpc(VpcId=handle)
        except ClientError as e:
            if _error_code(e) in VPC_NOT_FOUND:
                raise NotFound(handle) from e
            raise AdapterFailure(f"Failed to delete VPC {handle}: {e}") from e


class EksClusterAdapter(ProviderAdapter):
    kind = ResourceKind.CLUSTER

    @staticmethod
    def nodegroup_name(cluster_name: str) -> str:
        return f"{cluster_name}-nodes"

    def _describe(self, eks, name: str) -> Optional[Dict[str, Any]]:
        try:
            return eks.describe_cluster(name=name)["cluster"]
        except ClientError as e:
            if _error_code(e) in EKS_NOT_FOUND:
                return None
            raise

    def _describe_nodegroup(self, eks, name: str) -> Optional[Dict[str, Any]]:
        try:
            return eks.describe_nodegroup(clusterName=name, nodegroupName=self.nodegroup_name(name))["nodegroup"]
        except ClientError as e:
            if _error_code(e) in EKS_NOT_FOUND:
                return None
            raise

    def create_or_update(self, resource_id: str, parameters: Dict[str, Any], config: ProviderConfig) -> str:
        eks = _client("eks", config)
        try:
            cluster = self._describe(eks, resource_id)

            if cluster is None:
                if not parameters.get("role_arn") or not parameters.get("subnet_ids"):
                    raise AdapterFailure(
                        f"Cluster {resource_id} needs role_arn and subnet_ids to be created", resource_id
                    )
                eks.create_cluster(
                    name=resource_id,
                    version=parameters["version"],
                    roleArn=parameters["role_arn"],
                    resourcesVpcConfig={"subnetIds": parameters["subnet_ids"]},
                    tags=base_tags(resource_id),
                )
                eks.get_waiter("cluster_active").wait(name=resource_id)
                logger.info(f"Created EKS cluster {resource_id}")
            else:
                if cluster.get("status") in EKS_IN_PROGRESS:
                    logger.info(f"EKS cluster {resource_id} is {cluster['status']}, waiting for it to become active")
                    eks.get_waiter("cluster_active").wait(name=resource_id)
                if cluster.get("version") != parameters["version"]:
                    eks.update_cluster_version(name=resource_id, version=parameters["version"])
                    eks.get_waiter("cluster_active").wait(name=resource_id)
                    logger.info(f"Upgraded EKS cluster {resource_id} to {parameters['version']}")

            if parameters.get("node_role_arn"):
                self._converge_nodegroup(eks, resource_id, parameters)

            return resource_id
        except ClientError as e:
            raise AdapterFailure(f"EKS call failed for {resource_id}: {e}", resource_id) from e

    def _converge_nodegroup(self, eks, name: str, parameters: Dict[str, Any]) -> None:
        count = parameters["node_count"]
        nodegroup = self._describe_nodegroup(eks, name)

        if nodegroup is None:
            eks.create_nodegroup(
                clusterName=name,
                nodegroupName=self.nodegroup_name(name),
                scalingConfig={"minSize": 1, "maxSize": max(count, 1), "desiredSize": count},
                subnets=parameters["subnet_ids"],
                instanceTypes=[parameters["node_type"]],
                nodeRole=parameters["node_role_arn"],
                tags=base_tags(name),
            )
            eks.get_waiter("nodegroup_active").wait(clusterName=name, nodegroupName=self.nodegroup_name(name))
            return

        scaling = nodegroup.get("scalingConfig", {})
        if scaling.get("desiredSize") != count:
            eks.update_nodegroup_config(
                clusterName=name,
                nodegroupName=self.nodegroup_name(name),
                scalingConfig={
                    "minSize": min(scaling.get("minSize", 1), count),
                    "maxSize": max(scaling.get("maxSize", count), count),
                    "desiredSize": count,
                },
            )

    def read(self, handle: str, config: ProviderConfig) -> Dict[str, Any]:
        eks = _client("eks", config)
        try:
            cluster = self._describe(eks, handle)
            if cluster is None:
                raise NotFound(handle)
            live = {"version": cluster.get("version")}
            nodegroup = self._describe_nodegroup(eks, handle)
        except ClientError as e:
            raise AdapterFailure(f"Failed to read EKS cluster {handle}: {e}") from e

        if nodegroup is not None:
            live["node_count"] = nodegroup.get("scalingConfig", {}).get("desiredSize")
            instance_types = nodegroup.get("instanceTypes") or []
            if instance_types:
                live["node_type"] = instance_types[0]
        return live

    def delete(self, handle: str, config: ProviderConfig) -> None:
        eks = _client("eks", config)
        try:
            if self._describe_nodegroup(eks, handle) is not None:
                eks.delete_nodegroup(clusterName=handle, nodegroupName=self.nodegroup_name(handle))
                eks.get_waiter("nodegroup_deleted").wait(
                    clusterName=handle, nodegroupName=self.nodegroup_name(handle)
                )
            eks.delete_cluster(name=handle)
        except ClientError as e:
            if _error_code(e) in EKS_NOT_FOUND:
                raise NotFound(handle) from e
            raise AdapterFailure(f"Failed to delete EKS cluster {handle}: {e}") from e


class RdsDatabaseAdapter(ProviderAdapter):
    kind = ResourceKind.DATABASE

    def _describe(self, rds, identifier: str) -> Optional[Dict[str, Any]]:
        try:
            instances = rds.describe_db_instances(DBInstanceIdentifier=identifier).get("DBInstances", [])
        except ClientError as e:
            if _error_code(e) in RDS_NOT_FOUND:
                return None
            raise
        return instances[0] if instances else None

    def create_or_update(self, resource_id: str, parameters: Dict[str, Any], config: ProviderConfig) -> str:
        rds = _client("rds", config)
        try:
            instance = self._describe(rds, resource_id)

            if instance is None:
                kwargs = {
                    "DBInstanceIdentifier": resource_id,
                    "Engine": parameters["engine"],
                    "EngineVersion": parameters["engine_version"],
                    "DBInstanceClass": parameters["instance_class"],
                    "AllocatedStorage": parameters["storage_gb"],
                    "MasterUsername": parameters["master_username"],
                    "ManageMasterUserPassword": True,
                    "Tags": to_aws_tags(base_tags(resource_id)),
                }
                if parameters.get("subnet_group"):
                    kwargs["DBSubnetGroupName"] = parameters["subnet_group"]
                rds.create_db_instance(**kwargs)
                rds.get_waiter("db_instance_available").wait(DBInstanceIdentifier=resource_id)
                logger.info(f"Created RDS instance {resource_id}")
                return resource_id

            if instance.get("DBInstanceStatus", "available") != "available":
                logger.info(f"RDS instance {resource_id} is {instance['DBInstanceStatus']}, waiting until available")
                rds.get_waiter("db_instance_available").wait(DBInstanceIdentifier=resource_id)

            if instance["Engine"] != parameters["engine"]:
                raise AdapterFailure(
                    f"Database {resource_id} runs {instance['Engine']}; the engine cannot be changed in place",
                    resource_id,
                )

            changes = {}
            if instance.get("EngineVersion") != parameters["engine_version"]:
                changes["EngineVersion"] = parameters["engine_version"]
                current_major = str(instance.get("EngineVersion", "")).split(".")[0]
                if current_major != parameters["engine_version"].split(".")[0]:
                    changes["AllowMajorVersionUpgrade"] = True
            if instance.get("DBInstanceClass") != parameters["instance_class"]:
                changes["DBInstanceClass"] = parameters["instance_class"]
            if instance.get("AllocatedStorage") != parameters["storage_gb"]:
                changes["AllocatedStorage"] = parameters["storage_gb"]

            if changes:
                rds.modify_db_instance(DBInstanceIdentifier=resource_id, ApplyImmediately=True, **changes)
                logger.info(f"Modified RDS instance {resource_id}: {sorted(changes)}")
            return resource_id
        except ClientError as e:
            raise AdapterFailure(f"RDS call failed for {resource_id}: {e}", resource_id) from e

    def read(self, handle: str, config: ProviderConfig) -> Dict[str, Any]:
        rds = _client("rds", config)
        try:
            instance = self._describe(rds, handle)
        except ClientError as e:
            raise AdapterFailure(f"Failed to read RDS instance {handle}: {e}") from e
        if instance is None:
            raise NotFound(handle)

        return {
            "engine": instance.get("Engine"),
            "engine_version": instance.get("EngineVersion"),
            "instance_class": instance.get("DBInstanceClass"),
            "storage_gb": instance.get("AllocatedStorage"),
            "master_username": instance.get("MasterUsername"),
        }

    def delete(self, handle: str, config: ProviderConfig) -> None:
        rds = _client("rds", config)
        try:
            rds.delete_db_instance(
                DBInstanceIdentifier=handle,
                SkipFinalSnapshot=True,
                DeleteAutomatedBackups=True,
            )
        except ClientError as e:
            if _error_code(e) in RDS_NOT_FOUND:
                raise NotFound(handle) from e
            raise AdapterFailure(f"Failed to delete RDS instance {handle}: {e}") from e
