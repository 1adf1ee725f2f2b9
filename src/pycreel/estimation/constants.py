"""
Constants used throughout pycreel estimation.
"""

# Two-sided normal quantiles for common confidence levels
Z_SCORE_90 = 1.6448536269514722
Z_SCORE_95 = 1.959963984540054
Z_SCORE_99 = 2.5758293035489004

# Variance methods
LINEARIZATION = "linearization"
BOOTSTRAP = "bootstrap"
JACKKNIFE = "jackknife"
REPLICATE = "replicate_weight_passthrough"
VARIANCE_METHODS = (LINEARIZATION, BOOTSTRAP, JACKKNIFE, REPLICATE)

# Lonely PSU policies
LONELY_PSU_POLICIES = ("adjust", "average", "certainty", "fail")

DEFAULT_ENGINE_CONFIG = {
    "lonely_psu": "adjust",
    "n_replicates": 1000,
    "conf_level": 0.95,
    "seed": None,
    "min_psu_per_stratum_bootstrap": 3,
    "min_psu_per_stratum_jackknife": 2,
    "unstable_group_size": 3,
    "n_workers": 1,
    "probability_floor": 1e-6,
}

# Design diagnostics thresholds
MAX_WEIGHT_CV = 1.0
MAX_WEIGHT_RATIO = 10.0
EXTREME_WEIGHT_MULTIPLE = 5.0
MIN_SAMPLE_SIZE = 30
MIN_STRATUM_SIZE = 5
MIN_CLUSTER_SIZE = 3
STRATUM_IMBALANCE_RATIO = 2.0

# Unit conversions
MINUTES_PER_HOUR = 60.0
