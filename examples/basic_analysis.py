"""
Basic Analysis Example

Demonstrates basic usage of svyest on a roving creel survey: catch rates by
species, fishing effort, total catch as effort x catch rate, and the
effect of the variance method.
"""

import pandas as pd
import numpy as np
from svyest import (SampleDesign, EstimationConfig, SurveyEstimator, StatisticSpec,
                    DomainEstimator, RatioEstimator, ProductEstimator, design_diagnostics)

# Create synthetic creel interview data: 30 survey days in 2 day-type strata
np.random.seed(42)
n_interviews = 1200
n_days = 30

day = np.random.randint(0, n_days, n_interviews)
data = pd.DataFrame({
    'day': day,
    'day_type': np.where(day < 20, 'weekday', 'weekend'),
    'species': np.random.choice(['walleye', 'perch', 'bass'], n_interviews, p=[0.5, 0.3, 0.2]),
    'hours': np.random.gamma(2.0, 1.5, n_interviews),
    'trip_complete': np.random.choice([True, False], n_interviews, p=[0.6, 0.4]),
    'w': np.where(day < 20, 4.0, 2.0) * np.random.uniform(0.8, 1.2, n_interviews),
    'days_in_stratum': np.where(day < 20, 80, 40),
})
data['catch'] = np.random.poisson(0.8 * data['hours'])

print("="*80)
print("SVYEST BASIC ANALYSIS EXAMPLE")
print("="*80)

design = SampleDesign(data, weight='w', strata='day_type', cluster='day', fpc='days_in_stratum')

print("\n1. Design Diagnostics")
print("-"*80)

report = design_diagnostics(design)
for name, issue in report['issues'].items():
    print(f"  {name}: {issue}")

print("\n2. Catch Rate by Species (ratio of sums, linearization)")
print("-"*80)

config = EstimationConfig(response='catch', exposure='hours', group_by=['species'])
rates = SurveyEstimator(design, config).estimate(display=True)

print("\n3. Same Catch Rates with Bootstrap Variance")
print("-"*80)

config = EstimationConfig(response='catch', exposure='hours', group_by=['species'],
                          variance_method='bootstrap', num_replicates=200, random_state=1)
SurveyEstimator(design, config).estimate(display=True)

print("\n4. Catch Rate by Species (automatic rule from trip completion)")
print("-"*80)

auto = RatioEstimator().estimate_ratio_auto(design, 'catch', 'hours', group_by=['species'])
for res in auto:
    print(f"  {res.group_key[0]:>8}: {res.estimate:.3f} (se {res.se:.3f}, "
          f"rule {res.diagnostics['auto_rule']})")

print("\n5. Total Effort (weighted total of hours)")
print("-"*80)

effort = DomainEstimator().estimate_by_domain(design, StatisticSpec.total('hours'))
print(f"  Effort: {effort[0].estimate:,.0f} hours (se {effort[0].se:,.0f})")

print("\n6. Total Catch = Effort x Catch Rate")
print("-"*80)

rate = RatioEstimator().estimate_ratio(design, 'catch', 'hours')
(total,) = ProductEstimator().estimate_product(effort, rate)
print(f"  Total catch: {total.estimate:,.0f} (se {total.se:,.0f}, "
      f"95% CI {total.ci_low:,.0f} - {total.ci_high:,.0f})")

print("\n" + "="*80)
print("EXAMPLE COMPLETE")
print("="*80)
