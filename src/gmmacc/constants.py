"""Numerical constants shared by the scoring kernels."""
import math

LOG_2PI = math.log(2.0 * math.pi)

# Version tags written into model and accumulator files
GMM_FORMAT_VERSION = 1
ACCS_FORMAT_VERSION = 1

# Zip magic used to tell binary (.npz) files from text ones
NPZ_MAGIC = b"PK\x03\x04"
