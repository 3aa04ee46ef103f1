"""PropelAI Agents - generation units invoked by the pipeline stages"""

from .base import AgentConfig, AgentContext, AgentResult, BaseAgent
from .volume_structure_agent import VolumeStructureAgent, create_volume_structure_agent
from .rfp_parser_agent import RfpParserAgent, create_rfp_parser_agent
from .validation_agent import ValidationAgent, create_validation_agent
from .content_mapper_agent import ContentMapperAgent, create_content_mapper_agent
from .writer_agent import WriterAgent, create_writer_agent
from .compliance_agent import ComplianceAgent, create_compliance_agent
from .consultant_agent import ConsultantAgent, create_consultant_agent
from .rewriter_agent import RewriterAgent, create_rewriter_agent
from .packaging_agent import PackagingAgent, create_packaging_agent
from .bundle import AgentBundle, create_agent_bundle

__all__ = [
    "AgentConfig",
    "AgentContext",
    "AgentResult",
    "BaseAgent",
    "VolumeStructureAgent",
    "create_volume_structure_agent",
    "RfpParserAgent",
    "create_rfp_parser_agent",
    "ValidationAgent",
    "create_validation_agent",
    "ContentMapperAgent",
    "create_content_mapper_agent",
    "WriterAgent",
    "create_writer_agent",
    "ComplianceAgent",
    "create_compliance_agent",
    "ConsultantAgent",
    "create_consultant_agent",
    "RewriterAgent",
    "create_rewriter_agent",
    "PackagingAgent",
    "create_packaging_agent",
    "AgentBundle",
    "create_agent_bundle",
]
