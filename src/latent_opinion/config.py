"""Configuration constants for the latent opinion model."""

# Sampling
DEFAULT_N_SAMPLES = 1000
DEFAULT_N_TUNE = 1000
DEFAULT_N_CHAINS = 4
TARGET_ACCEPT = 0.90
MAX_TREEDEPTH = 12
RANDOM_SEED = 42

# Priors
PHI_SHAPE = 3.0  # Gamma(shape, rate) on the beta-binomial dispersion
PHI_RATE = 0.04
SIGMA_THETA_SD = 1.0  # half-normal scales
SIGMA_DELTA_SD = 1.0
TAU_SD = 1.0
LKJ_ETA = 2.0
MU_LAMBDA_SD = 0.5
GAMMA_MEAN = 1.0  # item slope mean is fixed, not estimated

# Convergence thresholds
RHAT_THRESHOLD = 1.01
EBFMI_THRESHOLD = 0.2
MAX_DIVERGENCES = 0
ESS_THRESHOLD = 400  # reported only, not part of the acceptance rule

# Posterior summaries
INTERVAL_PROB = 0.95
PPC_REPLICATIONS = 500
