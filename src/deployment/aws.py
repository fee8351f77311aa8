"""Blue-Green Deployment — AWS collaborators.

Each environment label maps to one Auto Scaling Group and one Target
Group behind a shared ALB listener:

- provisioning publishes a new Launch Template version whose user data
  pulls and runs the container image, drains instances left from an
  earlier template, then scales the label's ASG up;
- health is read from the label's Target Group;
- switching traffic rewrites the listener's default forward action.
"""

import base64
import logging
import time
from typing import Callable, Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import EnvironmentLabel
from .exceptions import ProvisioningError
from .models import Environment, PoolHealth
from .platform import InfrastructureProvider, TrafficRouter

logger = logging.getLogger(__name__)

USER_DATA_TEMPLATE = """#!/bin/bash
set -euo pipefail
yum install -y docker || apt-get install -y docker.io
systemctl enable --now docker
REGISTRY="{registry}"
aws ecr get-login-password --region {region} | docker login --username AWS --password-stdin "$REGISTRY"
docker pull {image}
docker rm -f {app_name} 2>/dev/null || true
docker run -d --name {app_name} --restart always -p {host_port}:{container_port} {image}
"""


def render_user_data(
    image: str,
    region: str,
    app_name: str = "webapp",
    host_port: int = 80,
    container_port: int = 80,
) -> str:
    """Render the instance bootstrap script for ``image``, base64-encoded."""
    registry = image.split("/", 1)[0]
    script = USER_DATA_TEMPLATE.format(
        registry=registry,
        region=region,
        image=image,
        app_name=app_name,
        host_port=host_port,
        container_port=container_port,
    )
    return base64.b64encode(script.encode("utf-8")).decode("ascii")


class AsgInfrastructure(InfrastructureProvider):
    """Instance pools backed by one Auto Scaling Group per label.

    Pool handles are the ASG names.
    """

    def __init__(
        self,
        asg_names: Dict[EnvironmentLabel, str],
        target_groups: Dict[EnvironmentLabel, str],
        launch_template_id: str,
        desired_capacity: int = 2,
        region: str = "us-east-1",
        app_name: str = "webapp",
        drain_timeout_seconds: float = 600.0,
        drain_poll_seconds: float = 15.0,
        autoscaling_client=None,
        elbv2_client=None,
        ec2_client=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._asg_names = dict(asg_names)
        self._target_groups = dict(target_groups)
        self._launch_template_id = launch_template_id
        self._desired_capacity = desired_capacity
        self._region = region
        self._app_name = app_name
        self._drain_timeout = drain_timeout_seconds
        self._drain_poll = drain_poll_seconds
        self._sleep = sleep
        self._autoscaling = autoscaling_client or boto3.client("autoscaling", region_name=region)
        self._elbv2 = elbv2_client or boto3.client("elbv2", region_name=region)
        self._ec2 = ec2_client or boto3.client("ec2", region_name=region)

    def provision(self, environment: Environment, artifact_ref: str) -> str:
        """Bring up a fresh pool running ``artifact_ref`` in the label's ASG.

        An ASG does not replace running instances when its launch template
        changes, so a group that still has instances is drained to zero
        first. Every instance in the returned pool boots the new image.
        """
        asg_name = self._asg_names[environment.label]
        try:
            self._drain(asg_name)
            resp = self._ec2.create_launch_template_version(
                LaunchTemplateId=self._launch_template_id,
                SourceVersion="$Latest",
                VersionDescription=f"{self._app_name} {environment.label.value} {artifact_ref}"[:255],
                LaunchTemplateData={
                    "UserData": render_user_data(artifact_ref, self._region, self._app_name),
                },
            )
            version = str(resp["LaunchTemplateVersion"]["VersionNumber"])
            self._autoscaling.update_auto_scaling_group(
                AutoScalingGroupName=asg_name,
                LaunchTemplate={
                    "LaunchTemplateId": self._launch_template_id,
                    "Version": version,
                },
                MinSize=self._desired_capacity,
                MaxSize=self._desired_capacity,
                DesiredCapacity=self._desired_capacity,
            )
        except (ClientError, BotoCoreError) as exc:
            raise ProvisioningError(
                f"AWS rejected capacity for {asg_name}: {exc}",
                details={"asg": asg_name},
            ) from exc
        logger.info(
            "Requested %d instances in %s with launch template version %s",
            self._desired_capacity,
            asg_name,
            version,
        )
        return asg_name

    def health(self, handle: str) -> PoolHealth:
        label = self._label_for(handle)
        group = self._describe_group(handle)
        desired = group["DesiredCapacity"] if group else 0
        resp = self._elbv2.describe_target_health(TargetGroupArn=self._target_groups[label])
        states = [d["TargetHealth"]["State"] for d in resp.get("TargetHealthDescriptions", [])]
        healthy = sum(1 for s in states if s == "healthy")
        initial = sum(1 for s in states if s == "initial")
        unregistered = max(0, desired - len(states))
        return PoolHealth(
            healthy_count=healthy,
            total_count=max(desired, len(states)),
            pending_count=initial + unregistered,
        )

    def terminate(self, handle: str) -> None:
        self._autoscaling.update_auto_scaling_group(
            AutoScalingGroupName=handle,
            MinSize=0,
            DesiredCapacity=0,
        )
        logger.info("Scaled %s to zero", handle)

    def is_provisioned(self, handle: Optional[str]) -> bool:
        if handle is None:
            return False
        group = self._describe_group(handle)
        return bool(group) and group["DesiredCapacity"] > 0

    def _drain(self, asg_name: str) -> None:
        group = self._describe_group(asg_name)
        if not group or (group["DesiredCapacity"] == 0 and not group.get("Instances")):
            return
        logger.warning(
            "%s still runs %d instances from an earlier launch template; draining",
            asg_name,
            len(group.get("Instances", [])),
        )
        self._autoscaling.update_auto_scaling_group(
            AutoScalingGroupName=asg_name,
            MinSize=0,
            DesiredCapacity=0,
        )
        waited = 0.0
        while group and group.get("Instances"):
            if waited >= self._drain_timeout:
                raise ProvisioningError(
                    f"{asg_name} did not drain within {self._drain_timeout:.0f}s",
                    details={"asg": asg_name, "instances": len(group["Instances"])},
                )
            self._sleep(self._drain_poll)
            waited += self._drain_poll
            group = self._describe_group(asg_name)
        logger.info("Drained %s after %.0fs", asg_name, waited)

    def _describe_group(self, asg_name: str) -> Optional[dict]:
        resp = self._autoscaling.describe_auto_scaling_groups(AutoScalingGroupNames=[asg_name])
        groups = resp.get("AutoScalingGroups", [])
        return groups[0] if groups else None

    def _label_for(self, handle: str) -> EnvironmentLabel:
        for label, name in self._asg_names.items():
            if name == handle:
                return label
        raise KeyError(f"Unknown instance pool {handle}")


class AlbTrafficRouter(TrafficRouter):
    """Points the ALB listener's default action at a label's Target Group."""

    def __init__(self, listener_arn: str, region: str = "us-east-1", elbv2_client=None):
        self._listener_arn = listener_arn
        self._elbv2 = elbv2_client or boto3.client("elbv2", region_name=region)

    def set_active_target(self, environment: Environment) -> None:
        if not environment.target_group_ref:
            raise ValueError(f"Environment {environment.label.value} has no target group")
        self._elbv2.modify_listener(
            ListenerArn=self._listener_arn,
            DefaultActions=[{
                "Type": "forward",
                "TargetGroupArn": environment.target_group_ref,
            }],
        )
        logger.info(
            "Listener now forwards to %s (%s)",
            environment.target_group_ref,
            environment.label.value,
        )

    def current_target(self) -> Optional[str]:
        resp = self._elbv2.describe_listeners(ListenerArns=[self._listener_arn])
        for listener in resp.get("Listeners", []):
            for action in listener.get("DefaultActions", []):
                if action.get("Type") == "forward":
                    return action.get("TargetGroupArn")
        return None


def target_groups_from_settings(settings) -> Dict[EnvironmentLabel, str]:
    return {
        EnvironmentLabel.BLUE: settings.blue_target_group_arn,
        EnvironmentLabel.GREEN: settings.green_target_group_arn,
    }


def build_aws_platform(settings):
    """Build the AWS infrastructure provider and router from ``Settings``."""
    target_groups = target_groups_from_settings(settings)
    infrastructure = AsgInfrastructure(
        asg_names={
            EnvironmentLabel.BLUE: settings.blue_asg_name,
            EnvironmentLabel.GREEN: settings.green_asg_name,
        },
        target_groups=target_groups,
        launch_template_id=settings.launch_template_id,
        desired_capacity=settings.desired_capacity,
        drain_timeout_seconds=settings.drain_timeout_seconds,
        drain_poll_seconds=settings.drain_poll_seconds,
        region=settings.aws_region,
        app_name=settings.app_name,
    )
    router = AlbTrafficRouter(settings.listener_arn, region=settings.aws_region)
    return infrastructure, router, target_groups
