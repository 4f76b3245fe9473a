"""Constants shared across estimation and simulation modules."""

# Normal quantiles for common two-sided confidence levels
Z_SCORE_90 = 1.6448536269514722
Z_SCORE_95 = 1.959963984540054
Z_SCORE_99 = 2.5758293035489004

# Label of the all-observations domain
NATIONAL = "national"

# Pseudo-count added on each side of an adjusted proportion
DEFAULT_CONTINUITY = 0.5

# Nominal posterior quantiles evaluated by the calibration harness
DEFAULT_QUANTILES = (0.05, 0.1, 0.25, 0.5, 0.75, 0.9, 0.95)

# Prior scale of the grand-mean logit in the hierarchical models
DEFAULT_GRAND_MEAN_SCALE = 0.5

# Convergence threshold for external MCMC samplers
MAX_RHAT = 1.05
