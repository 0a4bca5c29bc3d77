"""
Constants and Configuration
Centralized constants for the retrieval core: category vocabulary,
query rule tables, scoring placeholders and defaults
"""
from typing import Dict, List, Tuple

# Content categories a record can belong to
CATEGORY_TAGS = (
    'facts_performance',
    'portfolio_holdings',
    'portfolio_sectors',
    'fees',
    'riskometer_benchmark',
    'faq',
    'tax_redemption',
    'regulatory_links',
    'downloads',
    'fund_manager',
    'contact',
    'investment_process',
    'scheme_documents',
)

# Record id layout: {entity_id}__{category_tag}[__{sub_key}]
ID_SEPARATOR = '__'

# Scheme display names for the reference catalog
SCHEME_DISPLAY_NAMES = {
    'hdfc-mid-cap-fund-direct-growth': 'HDFC Mid Cap Fund Direct Growth',
    'hdfc-large-cap-fund-direct-growth': 'HDFC Large Cap Fund Direct Growth',
    'hdfc-small-cap-fund-direct-growth': 'HDFC Small Cap Fund Direct Growth',
    'hdfc-equity-fund-direct-growth': 'HDFC Flexi Cap Direct Plan Growth',
    'hdfc-elss-tax-saver-fund-direct-plan-growth': 'HDFC ELSS Tax Saver Fund Direct Plan Growth',
}

# Entity rules: (pattern, entity_id). Evaluated in order, first match wins.
ENTITY_RULES: List[Tuple[str, str]] = [
    (r'mid.?cap', 'hdfc-mid-cap-fund-direct-growth'),
    (r'large.?cap', 'hdfc-large-cap-fund-direct-growth'),
    (r'small.?cap', 'hdfc-small-cap-fund-direct-growth'),
    (r'flexi.?cap', 'hdfc-equity-fund-direct-growth'),
    (r'elss|tax.?saver', 'hdfc-elss-tax-saver-fund-direct-plan-growth'),
]

# Category rules: (pattern, category_tag). Evaluated in order, first match wins.
# Overlaps are resolved by position only: "fees" precedes "tax", so a query
# mentioning both lands on fees.
CATEGORY_RULES: List[Tuple[str, str]] = [
    (r'expense.?ratio|\bter\b|\bfees?\b|charges', 'fees'),
    (r'exit.?load', 'fees'),
    (r'minimum.?sip|min.*sip|sip.*amount', 'facts_performance'),
    (r'lock.?in|lockin', 'tax_redemption'),
    (r'risk|riskometer', 'riskometer_benchmark'),
    (r'benchmark', 'riskometer_benchmark'),
    (r'holdings?|portfolio', 'portfolio_holdings'),
    (r'tax|capital.?gains|ltcg|stcg|80c', 'tax_redemption'),
    (r'download.*statement|statement.*download|how.*download', 'downloads'),
    (r'\bnav\b|returns?|performance', 'facts_performance'),
    (r'fund.?size|\baum\b', 'facts_performance'),
]

# Structured fields folded into the text that gets embedded
FIELD_DISPLAY_NAMES: Dict[str, str] = {
    'expense_ratio': 'Expense Ratio (%)',
    'ter_percent': 'Total Expense Ratio (%)',
    'minimum_sip': 'Minimum SIP',
    'lock_in_text': 'Lock-in',
    'exit_load_text': 'Exit Load',
    'riskometer_category': 'Risk',
    'returns_1y': '1Y Return (%)',
    'returns_3y': '3Y Return (%)',
    'returns_5y': '5Y Return (%)',
}

# Retrieval settings
DEFAULT_LIMIT = 5
CANDIDATE_MULTIPLIER = 3  # vector steps fetch limit * multiplier before filtering
EXACT_MATCH_SCORE = 1.0
SUBSTRING_PLACEHOLDER_SCORE = 0.5  # constant, not a similarity measure
SCAN_TOKEN_COUNT = 2  # leading query tokens used by the last-resort scan

# Embedding settings
DEFAULT_EMBEDDING_PROVIDER = 'gemini'
GEMINI_EMBEDDING_MODEL = 'text-embedding-004'
GEMINI_EMBEDDING_DIMENSION = 768
LOCAL_EMBEDDING_MODEL = 'all-MiniLM-L6-v2'
EMBEDDING_TIMEOUT_SECONDS = 5.0

# Snapshot layout
DEFAULT_SNAPSHOT_DIR = 'data/corpus'
RECORDS_FILENAME = 'records.jsonl'
VECTOR_INDEX_FILENAME = 'vector_index.faiss'
VECTOR_MAPPING_FILENAME = 'vector_mapping.json'
INDEX_METADATA_FILENAME = 'index_metadata.json'
