"""
PropelAI Agent Bundle

The set of generation units the stage executors call. Stages take a
bundle rather than constructing agents themselves, so a deployment (or a
test) can swap any unit for another implementation of the same contract.
"""

from dataclasses import dataclass
from typing import Optional

from core.config import PipelineConfig
from agents.base import BaseAgent
from agents.integrations.generation_gateway import GenerationGateway
from agents.volume_structure_agent import create_volume_structure_agent
from agents.rfp_parser_agent import create_rfp_parser_agent
from agents.validation_agent import create_validation_agent
from agents.content_mapper_agent import create_content_mapper_agent
from agents.writer_agent import create_writer_agent
from agents.compliance_agent import create_compliance_agent
from agents.consultant_agent import create_consultant_agent
from agents.rewriter_agent import create_rewriter_agent
from agents.packaging_agent import create_packaging_agent


@dataclass
class AgentBundle:
    volume_structure: BaseAgent
    rfp_parser: BaseAgent
    validator: BaseAgent
    content_mapper: BaseAgent
    writer: BaseAgent
    scorer: BaseAgent
    consultant: BaseAgent
    rewriter: BaseAgent
    packager: BaseAgent


def create_agent_bundle(
    gateway: Optional[GenerationGateway] = None,
    config: Optional[PipelineConfig] = None,
) -> AgentBundle:
    """Factory function wiring every agent to one gateway"""
    return AgentBundle(
        volume_structure=create_volume_structure_agent(config),
        rfp_parser=create_rfp_parser_agent(gateway),
        validator=create_validation_agent(),
        content_mapper=create_content_mapper_agent(gateway),
        writer=create_writer_agent(gateway),
        scorer=create_compliance_agent(gateway, config),
        consultant=create_consultant_agent(gateway, config),
        rewriter=create_rewriter_agent(gateway, config),
        packager=create_packaging_agent(),
    )
