"""
Bundle Schemas Package
Provides standardized data structures for bundles and auto-bundle rules.
"""

from .bundle_schemas import (
    # Constants
    BUNDLE_STATUSES,
    MIN_COMPONENTS,

    # Bundle schemas
    BundleComponent,
    BundleComponentDict,
    BundleInput,
    BundlePatch,
    Bundle,
    BundleDict,
    ImportReport,

    # Helper functions
    distinct_product_ids,
    validate_bundle_input,
    parse_bundle_input,
    parse_bundle_patch,
)
from .rule_schemas import (
    RuleCriteria,
    parse_rule_criteria,
    criteria_from_rule,
    rule_to_dict,
)
