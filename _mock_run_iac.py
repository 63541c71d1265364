import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from iac_msm_pipeline.config import CONFIG
from iac_msm_pipeline.main import main
from iac_msm_pipeline.synthetic import simulate_iac_cohort

N_STAYS = 1776

work_dir = Path(tempfile.mkdtemp(prefix="iac_mock_"))
csv_path = work_dir / "aline_full_cohort_data.csv"

cohort = simulate_iac_cohort(N_STAYS, seed=CONFIG["random_seed"], exposure_log_or=0.0)
# A handful of incomplete rows to exercise case-wise exclusion.
cohort.loc[cohort.sample(12, random_state=7).index, "weight_first"] = None
cohort.to_csv(csv_path, index=False)

result = main(csv_path, work_dir / "outputs")
print('outputs:', result.output_dir)
print('MOCK_RUN_SUCCESS')
