"""
Centralized default settings for the triplet embedding engine.
All hyper-parameter defaults used by the estimator, trainer and CLI live here.
"""

# Embedding space
EMBEDDING_DIMS = 2

# Neighbor index
N_NEIGHBORS = 150
METRIC = "euclidean"
NEIGHBOR_METHOD = "auto"
# Above this many points the approximate (nndescent) index is used in 'auto' mode
EXACT_THRESHOLD = 10000
QUERY_CHUNK_SIZE = 2048

# Triplet sampling
MAX_NEGATIVE_RETRIES = 10

# Network
MODEL = "szubert"

# Loss
DISTANCE = "pn"
MARGIN = 1.0

# Optimization
OPTIMIZER = "adam"
LEARNING_RATE = 1e-3
BATCH_SIZE = 128
EPOCHS = 1000
N_EPOCHS_WITHOUT_PROGRESS = 20
MIN_DELTA = 0.0

# Inference
INFERENCE_BATCH_SIZE = 4096

# Persistence
CONFIG_FILENAME = "config.json"
PARAMS_FILENAME = "params.msgpack"
