"""
Accumulate E-step Statistics On Toy Data
========================================
"""

# %%
import matplotlib.pyplot as plt
import numpy as np

import gmmacc
from gmmacc import GmmAccumulators, accumulate_corpus

# %%
# Simulate a model and a small corpus
# ^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^

# %%
gmm = gmmacc.utils.generate_toy_gmm(n_components=8, dim=2, seed=42)
corpus = []
for i in range(20):
    frames, labels = gmmacc.utils.generate_toy_data(gmm, n_frames=200, seed=i)
    corpus.append((f"utt{i:02d}", frames))

# %%
# Accumulate over all components, then with pruned candidate lists
# ^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^

# %%
full = GmmAccumulators.resize(gmm, "mvw")
stats_full = accumulate_corpus(gmm, full, corpus)

# Keep the 2 best components of each frame
gselect = {}
for key, frames in corpus:
    loglikes = gmm.log_likelihoods(frames)
    gselect[key] = loglikes.topk(2, dim=1).indices.tolist()

pruned = GmmAccumulators.resize(gmm, "mvw")
stats_pruned = accumulate_corpus(gmm, pruned, corpus, gselect_reader=gselect)

print(f"average log-likelihood, all components: {stats_full.average_loglike:.4f}")
print(f"average log-likelihood, top-2 pruning:  {stats_pruned.average_loglike:.4f}")

# %%
# Plot Results
# ^^^^^^^^^^^^

# %%
fig, ax = plt.subplots(constrained_layout=True)
x = np.arange(gmm.n_components)
ax.bar(x - 0.2, full.occupancy.numpy(), width=0.4, label="all components")
ax.bar(x + 0.2, pruned.occupancy.numpy(), width=0.4, label="top-2 pruning")
ax.set_xlabel("Component")
ax.set_ylabel("Occupancy")
ax.legend()
plt.show()
