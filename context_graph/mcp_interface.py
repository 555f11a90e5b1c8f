"""
MCP Interface Layer using fastmcp, exposing the knowledge graph to agents.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from context_graph.services.context_bundler import ContextBundler
from context_graph.services.debate_arbiter import DebateArbiter, JudgeDispatcher
from context_graph.services.decay_scorer import DecayScheduler, DecayScorer
from context_graph.services.event_processor import EventProcessor, LogParser
from context_graph.services.feedback_service import FeedbackService
from context_graph.services.knowledge_service import KnowledgeService
from context_graph.services.relationship_graph import RelationshipGraph
from context_graph.services.remediation_matcher import classify_pattern, classify_severity, RemediationMatcher
from context_graph.services.search_service import SearchService
from context_graph.utils.bedrock_embed import BedrockEmbed
from context_graph.utils.config import config
from context_graph.utils.exceptions import ContextGraphError
from context_graph.utils.health_check import get_system_info
from context_graph.utils.logging_config import get_logger
from context_graph.utils.neptune_client import NeptuneClient
from context_graph.utils.opensearch_client import OpenSearchClient, OpenSearchError

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Context Graph')

store = OpenSearchClient(config.opensearch)
try:
    store.create_indices_if_not_exist()
except OpenSearchError as e:
    logger.warning(f'Failed to create OpenSearch indexes: {e}')

embed = BedrockEmbed(config.bedrock_embed)
graph = RelationshipGraph(neptune=NeptuneClient(config.neptune), store=store)
knowledge_service = KnowledgeService(store=store, embed=embed, graph=graph)
event_processor = EventProcessor(knowledge_service)
log_parser = LogParser(event_processor)
arbiter = DebateArbiter(store=store, dispatcher=JudgeDispatcher())
remediation = RemediationMatcher(store=store, embed=embed)
decay_scorer = DecayScorer(store=store)
search_service = SearchService(store=store, embed=embed)
bundler = ContextBundler(search=search_service, graph=graph, store=store)
feedback_service = FeedbackService(store=store)


def _fail(tool: str, error: Exception):
    logger.error(f'{tool} failed: {error}')
    raise Exception(f'{tool} failed: {error}')


@mcp.tool()
def find_related_items(item_id: str, item_type: str, depth: int = 2) -> List[Dict[str, Any]]:
    """Find items reachable from an item through outgoing relationships.

    Args:
        item_id: Item id, e.g. ADR-001
        item_type: adr, failure, meeting or snapshot
        depth: Maximum traversal depth (default: 2)

    Returns:
        List of {id, type, relationship, strength} in discovery order
    """
    try:
        return [related.to_dict() for related in graph.find_related(item_id, item_type, depth)]
    except ContextGraphError as e:
        _fail('find_related_items', e)


@mcp.tool()
def create_relationship(from_id: str,
                        from_type: str,
                        to_id: str,
                        to_type: str,
                        relationship_type: str,
                        strength: float = 1.0) -> Dict[str, Any]:
    """Create a typed relationship between two items.

    Args:
        from_id: Source item id
        from_type: Source item type
        to_id: Target item id
        to_type: Target item type
        relationship_type: e.g. references, implements, fixes, caused_by, related_to
        strength: Edge weight (default: 1.0)
    """
    try:
        return graph.create_relationship(from_id, from_type, to_id, to_type, relationship_type, strength).to_dict()
    except ContextGraphError as e:
        _fail('create_relationship', e)


@mcp.tool()
def auto_link_item(item_id: str, item_type: str, content: str) -> List[Dict[str, Any]]:
    """Create 'references' relationships for every item id mentioned in the content."""
    try:
        return [relationship.to_dict() for relationship in graph.auto_link_item(item_id, item_type, content)]
    except ContextGraphError as e:
        _fail('auto_link_item', e)


@mcp.tool()
def export_graph(include_archived: bool = False, max_nodes: int = 1000) -> Dict[str, List[Dict[str, Any]]]:
    """Export nodes and edges of the knowledge graph for visualization."""
    try:
        return graph.export_graph(include_archived=include_archived, max_nodes=max_nodes)
    except ContextGraphError as e:
        _fail('export_graph', e)


@mcp.tool()
def create_knowledge_item(item_type: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Create an ADR, failure, meeting or snapshot.

    Args:
        item_type: adr, failure, meeting or snapshot
        fields: Item fields, e.g. title/decision/context for an ADR or title/root_cause/resolution for a failure
    """
    try:
        return knowledge_service.create_item(item_type, fields).to_document()
    except ContextGraphError as e:
        _fail('create_knowledge_item', e)


@mcp.tool()
def contribute_to_debate(resource_id: str,
                         resource_type: str,
                         contributor_id: str,
                         stance: str,
                         argument: str,
                         contributor_type: str = 'agent') -> Dict[str, Any]:
    """Add a stance and argument about an item, opening its debate if needed.

    Args:
        resource_id: Item id under debate
        resource_type: Item type
        contributor_id: Who is contributing
        stance: agree, disagree, neutral or question
        argument: 10 to 5000 characters
        contributor_type: agent or human (default: agent)
    """
    try:
        return arbiter.contribute(resource_id, resource_type, contributor_id, contributor_type, stance,
                                  argument).to_document()
    except ContextGraphError as e:
        _fail('contribute_to_debate', e)


@mcp.tool()
def add_debate_message(debate_id: str,
                       contributor_id: str,
                       stance: str,
                       argument: str,
                       contributor_type: str = 'agent') -> Dict[str, Any]:
    """Append a message to an existing debate."""
    try:
        return arbiter.add_message(debate_id, contributor_id, contributor_type, stance, argument).to_document()
    except ContextGraphError as e:
        _fail('add_debate_message', e)


@mcp.tool()
def get_debate(debate_id: str) -> Dict[str, Any]:
    """Get a debate with its messages and judgment."""
    try:
        return arbiter.get_debate(debate_id).to_dict()
    except ContextGraphError as e:
        _fail('get_debate', e)


@mcp.tool()
def list_pending_judgments() -> List[Dict[str, Any]]:
    """List open debates that reached the judgment threshold without being judged."""
    try:
        return [debate.to_dict() for debate in arbiter.list_pending_judgments()]
    except ContextGraphError as e:
        _fail('list_pending_judgments', e)


@mcp.tool()
def trigger_judge(debate_id: str) -> Dict[str, str]:
    """Dispatch a judge job for a debate."""
    try:
        future = arbiter.trigger_judge(debate_id)
        return {'status': 'judge_triggered' if future is not None else 'dispatcher_stopped', 'debate_id': debate_id}
    except ContextGraphError as e:
        _fail('trigger_judge', e)


@mcp.tool()
def remediate_error(error_message: str,
                    stack_trace: str = '',
                    pattern: Optional[str] = None,
                    top_k: int = 5) -> Dict[str, Any]:
    """Classify an error and find similar resolved incidents with suggested actions."""
    try:
        return remediation.remediate(error_message, stack_trace, pattern, top_k).to_dict()
    except ContextGraphError as e:
        _fail('remediate_error', e)


@mcp.tool()
def classify_error(error_message: str, stack_trace: str = '') -> Dict[str, str]:
    """Classify an error into a pattern and severity without searching."""
    pattern = classify_pattern(error_message, stack_trace)
    return {'pattern': pattern, 'severity': classify_severity(pattern)}


@mcp.tool()
def run_decay_sweep() -> Dict[str, Any]:
    """Run one relevance-decay sweep now and report what was archived."""
    return decay_scorer.run().to_dict()


@mcp.tool()
def ingest_error_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Record an application error event as a failure.

    Args:
        event: title, app_name, stack_trace, message, severity, timestamp, environment
    """
    try:
        return event_processor.process_error_event(event).to_document()
    except ContextGraphError as e:
        _fail('ingest_error_event', e)


@mcp.tool()
def ingest_metric_event(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Record a metric breach as a performance failure; returns null when within threshold."""
    try:
        failure = event_processor.process_metric_event(event)
        return failure.to_document() if failure else None
    except ContextGraphError as e:
        _fail('ingest_metric_event', e)


@mcp.tool()
def ingest_deploy_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Record a deployment as a snapshot.

    Args:
        event: app_name, version, commit_hash, deployer, changes, timestamp, environment
    """
    try:
        return event_processor.process_deploy_event(event).to_document()
    except ContextGraphError as e:
        _fail('ingest_deploy_event', e)


@mcp.tool()
def ingest_logs(logs: List[Dict[str, Any]]) -> List[str]:
    """Record every error-level entry of a structured log batch; returns the created failure ids."""
    try:
        return [failure.id for failure in log_parser.process_batch(logs)]
    except ContextGraphError as e:
        _fail('ingest_logs', e)


@mcp.tool()
def search_knowledge(query: str,
                     tags: Optional[List[str]] = None,
                     date_from: Optional[str] = None,
                     date_to: Optional[str] = None,
                     types: Optional[List[str]] = None,
                     top_k: int = 20) -> List[Dict[str, Any]]:
    """Semantic search across ADRs, failures, meetings and snapshots.

    Args:
        query: Free-text query
        tags: Keep results carrying any of these tags
        date_from: Inclusive lower date bound (YYYY-MM-DD)
        date_to: Inclusive upper date bound (YYYY-MM-DD)
        types: Item types to search (default: all)
        top_k: Maximum number of results (default: 20)

    Returns:
        List of {id, type, title, content, tags, created_date, similarity}, most similar first
    """
    try:
        results = search_service.filtered_search(query, tags=tags, date_from=date_from, date_to=date_to,
                                                 types=types, top_k=top_k)
        return [result.to_dict() for result in results]
    except ContextGraphError as e:
        _fail('search_knowledge', e)


@mcp.tool()
def bundle_context(query: str, max_tokens: int = 4000, domains: Optional[List[str]] = None) -> Dict[str, Any]:
    """Ranked, size-limited context for a task: key decisions, known issues and recent changes.

    Args:
        query: What the agent is working on
        max_tokens: Approximate size budget (default: 4000)
        domains: Only include items tagged with one of these domains

    Returns:
        Bundle with query_id; pass the query_id back with submit_feedback
    """
    try:
        return bundler.bundle_context(query, max_tokens=max_tokens, domains=domains).to_dict()
    except ContextGraphError as e:
        _fail('bundle_context', e)


@mcp.tool()
def submit_feedback(query_id: Optional[str] = None,
                    query_text: Optional[str] = None,
                    overall_rating: Optional[int] = None,
                    items_helpful: Optional[List[str]] = None,
                    items_not_helpful: Optional[List[str]] = None,
                    items_used: Optional[List[str]] = None,
                    missing_context: Optional[str] = None,
                    agent_id: Optional[str] = None,
                    session_id: Optional[str] = None) -> Dict[str, Any]:
    """Rate the context returned for a query (overall_rating 1-5)."""
    fields = {
        'query_id': query_id,
        'query_text': query_text,
        'overall_rating': overall_rating,
        'items_helpful': items_helpful,
        'items_not_helpful': items_not_helpful,
        'items_used': items_used,
        'missing_context': missing_context,
        'agent_id': agent_id,
        'session_id': session_id,
    }
    try:
        return feedback_service.create_feedback(fields).to_document()
    except ContextGraphError as e:
        _fail('submit_feedback', e)


@mcp.tool()
def list_feedback(agent_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent feedback first, optionally for one agent."""
    try:
        return [feedback.to_document() for feedback in feedback_service.list_feedback(agent_id, limit)]
    except ContextGraphError as e:
        _fail('list_feedback', e)


@mcp.tool()
def feedback_stats(days_back: int = 30) -> Dict[str, Any]:
    """Feedback volume, average rating, most helpful items and most requested missing context."""
    try:
        return feedback_service.feedback_stats(days_back)
    except ContextGraphError as e:
        _fail('feedback_stats', e)


@mcp.tool()
def system_info() -> Dict[str, Any]:
    """Report configuration and collaborator health."""
    return get_system_info()


if __name__ == '__main__':
    scheduler = DecayScheduler(decay_scorer)
    if config.decay.scheduler_enabled:
        scheduler.start()
    try:
        mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
    finally:
        scheduler.stop()
        arbiter.dispatcher.shutdown(wait=False)
