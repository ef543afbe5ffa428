"""
Cross-validated risk curves for an additive model.

Compares k-fold, bootstrap and subsampling estimates of the out-of-sample risk
along the boosting path, and the effect of the step length ν on the selected
mstop.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from cwboost import CrossValidator, Dataset, parse_formula

OUTPUT_DIR = Path(__file__).resolve().parent

# Set style
plt.style.use('seaborn-v0_8-darkgrid')

FORMULA = "y ~ bols(x1) + bbs(x2) + bmono(x3, constraint='increasing') + btree(x4)"


def make_data(n=300, seed=42):
    """Additive toy problem with one noise predictor."""
    rng = np.random.default_rng(seed)
    x = rng.uniform(-1, 1, (n, 4))
    y = (
        1.5 * x[:, 0]
        + np.sin(3 * x[:, 1])
        + np.log1p(np.exp(4 * x[:, 2])) / 4
        + 0.5 * rng.standard_normal(n)
    )
    return Dataset(y, {f"x{j + 1}": x[:, j] for j in range(4)})


def experiment_schemes(dataset, terms, mstop_max=400):
    """Experiment: resampling scheme."""
    print("\n" + "="*60)
    print("Experiment 1: Resampling scheme")
    print("="*60)

    results = []
    fig, axes = plt.subplots(1, 3, figsize=(15, 4), sharey=True)

    for ax, scheme in zip(axes, ("kfold", "bootstrap", "subsampling")):
        print(f"\nCross-validating with scheme={scheme}...")
        cv = CrossValidator(fold_count=10, scheme=scheme, seed=42).evaluate(dataset, terms, mstop_max)
        print(f"Best mstop: {cv.best_mstop}, risk: {cv.risk_at(cv.best_mstop):.4f}")

        results.append({
            'scheme': scheme,
            'best_mstop': cv.best_mstop,
            'min_risk': cv.risk_at(cv.best_mstop),
        })

        iterations = np.arange(cv.mstop_max + 1)
        ax.plot(iterations, cv.fold_risk.T, color='grey', alpha=0.3, linewidth=1)
        ax.plot(iterations, cv.mean_risk, color='black', linewidth=2, label='Mean')
        ax.axvline(cv.best_mstop, color='red', linestyle='--', label=f'mstop={cv.best_mstop}')
        ax.set_xlabel('Iteration')
        ax.set_title(scheme)
        ax.legend()
        ax.grid(True, alpha=0.3)
    axes[0].set_ylabel('Held-out MSE')

    plt.tight_layout()
    plt.savefig(OUTPUT_DIR / "cv_curves_schemes.png", dpi=150)
    plt.close(fig)
    print("\nSaved plot: cv_curves_schemes.png")

    return pd.DataFrame(results)


def experiment_step_length(dataset, terms, mstop_max=600):
    """Experiment: effect of shrinkage on the selected mstop."""
    print("\n" + "="*60)
    print("Experiment 2: Effect of step length nu")
    print("="*60)

    results = []
    fig, ax = plt.subplots(figsize=(10, 6))

    for nu in (0.05, 0.1, 0.3):
        print(f"\nCross-validating with nu={nu}...")
        cv = CrossValidator(fold_count=10, seed=42, shrinkage=nu).evaluate(dataset, terms, mstop_max)
        print(f"Best mstop: {cv.best_mstop}, risk: {cv.risk_at(cv.best_mstop):.4f}")

        results.append({
            'nu': nu,
            'best_mstop': cv.best_mstop,
            'min_risk': cv.risk_at(cv.best_mstop),
        })
        ax.plot(cv.mean_risk, label=f'nu={nu}', linewidth=2)

    ax.set_xlabel('Iteration')
    ax.set_ylabel('Mean held-out MSE')
    ax.set_title('Effect of Step Length on CV Risk')
    ax.legend()
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(OUTPUT_DIR / "cv_curves_step_length.png", dpi=150)
    plt.close(fig)
    print("\nSaved plot: cv_curves_step_length.png")

    return pd.DataFrame(results)


def main():
    print("="*60)
    print("Cross-validated Risk Curves")
    print(FORMULA)
    print("="*60)

    dataset = make_data()
    _, terms = parse_formula(FORMULA, dataset)

    results_schemes = experiment_schemes(dataset, terms)
    results_nu = experiment_step_length(dataset, terms)

    print("\n" + "="*60)
    print("Results Summary")
    print("="*60)
    print("\nResampling scheme:")
    print(results_schemes.to_string(index=False))
    print("\nStep length:")
    print(results_nu.to_string(index=False))


if __name__ == "__main__":
    main()
