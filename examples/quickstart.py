"""
simmr Quickstart Example
========================

This example demonstrates the complete simmr workflow:
1. Load mixtures, sources, corrections and concentrations
2. Fit the hierarchical mixing model by MCMC
3. Check convergence diagnostics
4. Summarise dietary proportions
5. Fit several groups at once

NOTE: The single-group data are the standard 10-observation, 4-source
example. The grouped data are simulated around it.
"""

import warnings

import numpy as np

from simmr import MCMCConfig, MixingPipeline, load, simmr_mcmc

print("="*70)
print("simmr Quickstart Example")
print("="*70)

# ===== 1. Prepare Data =====
print("\n[Step 1] Loading isotope data...\n")

mixtures = np.array([
    [-10.13, 11.59], [-10.72, 11.01], [-11.39, 10.59], [-11.18, 10.97],
    [-10.81, 11.52], [-10.70, 11.89], [-10.54, 11.73], [-10.48, 10.89],
    [-9.93, 11.05], [-9.37, 12.30],
])
source_names = ['Zostera', 'Grass', 'U.lactuca', 'Enteromorpha']
source_means = [[-14.00, 3.06], [-15.10, 7.05], [-11.03, 13.72], [-14.44, 5.96]]
source_sds = [[0.48, 0.46], [0.38, 0.39], [0.48, 0.42], [0.43, 0.48]]
correction_means = [[2.63, 3.28], [1.59, 2.34], [3.41, 2.14], [3.04, 2.36]]
correction_sds = [[0.41, 0.46], [0.44, 0.48], [0.34, 0.46], [0.46, 0.66]]
concentration = [[0.02, 0.02], [0.10, 0.10], [0.12, 0.09], [0.04, 0.05]]

dataset = load(
    mixtures=mixtures,
    source_names=source_names,
    source_means=source_means,
    source_sds=source_sds,
    correction_means=correction_means,
    correction_sds=correction_sds,
    concentration_means=concentration,
    tracer_names=['d13C', 'd15N']
)
print(dataset)
print(dataset.to_frame().head().to_string(index=False))


# ===== 2. Fit the Model =====
print("\n" + "="*70)
print("[Step 2] Fitting the mixing model")
print("="*70)

result = simmr_mcmc(
    dataset,
    mcmc_control=MCMCConfig(iterations=10000, burn=1000, thin=10, n_chains=4, random_seed=42)
)


# ===== 3. Check Convergence =====
print("\n" + "="*70)
print("[Step 3] MCMC Convergence Diagnostics")
print("="*70 + "\n")

result.check_convergence(1)


# ===== 4. Summarise Proportions =====
print("\n" + "="*70)
print("[Step 4] Posterior dietary proportions")
print("="*70 + "\n")

draws = result.draws(1)
summary = draws[source_names].describe(percentiles=[0.025, 0.5, 0.975]).T
print(summary[['mean', 'std', '2.5%', '50%', '97.5%']].round(3).to_string())
print(f"\nResidual sd: {draws[['sd_d13C', 'sd_d15N']].mean().round(3).to_dict()}")


# ===== 5. Several Groups =====
print("\n" + "="*70)
print("[Step 5] Grouped run (one model per group)")
print("="*70)

rng = np.random.default_rng(1)
sizes = {'Autumn': 6, 'Winter': 2, 'Spring': 5, 'Summer': 7}
labels = np.repeat(list(sizes), list(sizes.values()))
grouped_mixtures = mixtures[rng.integers(0, len(mixtures), size=len(labels))]
grouped_mixtures = grouped_mixtures + rng.normal(0.0, 0.3, size=grouped_mixtures.shape)

grouped = load(
    mixtures=grouped_mixtures,
    source_names=source_names,
    source_means=source_means,
    source_sds=source_sds,
    correction_means=correction_means,
    correction_sds=correction_sds,
    concentration_means=concentration,
    group=labels,
    tracer_names=['d13C', 'd15N']
)

group_sizes = grouped.to_frame().groupby('group').size()
group_sizes.index = [grouped.group_names[g - 1] for g in group_sizes.index]
print("\nObservations per group:")
print(group_sizes.to_string())

with warnings.catch_warnings(record=True) as caught:
    warnings.simplefilter("always")
    pipeline = MixingPipeline(quick_mode=True, random_seed=42).fit(grouped)

for warning in caught:
    print(f"⚠ {warning.message}")

for group in pipeline.result_.groups:
    name = grouped.group_names[group - 1]
    means = pipeline.posterior_means(group)[source_names]
    print(f"\n  {name}: " + ", ".join(f"{s}={m:.2f}" for s, m in means.items()))

diagnostics = pipeline.get_convergence_diagnostics()
print(f"\n✓ Max R̂: {diagnostics['r_hat'].max():.4f} (should be < 1.01)")
print(f"✓ Min ESS: {diagnostics['ess_bulk'].min():.0f} (should be > 400)")


# ===== Summary =====
print("\n" + "="*70)
print("✅ Quickstart Complete!")
print("="*70)
print("\nNext Steps:")
print("  1. Replace the example arrays with your own measurements")
print("  2. If R̂ ≥ 1.01, multiply iterations, burn and thin by 10")
print("  3. Pass individual_effects=True for per-observation proportions")
print("\n" + "="*70 + "\n")
