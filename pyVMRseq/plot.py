import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns

def region_plot(result,cr_index: int,ax=None):
    """
    Plot methylation level and variance of the sites of a candidate region, shading its VMRs.

    Parameters:
        result (dict): Output of vmrseq_fit().
        cr_index (integer): Row of the candidate region in result['cr_ranges'].
        ax (optional: matplotlib axes): Axes to draw on. A new figure is created if not given.

    Returns:
        matplotlib axes: The axes drawn on.
    """
    cr_ranges = result['cr_ranges']
    assert 0 <= cr_index < cr_ranges.shape[0], f"cr_index must be between 0 and {cr_ranges.shape[0] - 1}"

    cr = cr_ranges.iloc[cr_index]
    sites = result['sites'].iloc[cr['start_ind']:cr['end_ind']+1]
    level = np.divide(sites['meth'].to_numpy(dtype='float64'), sites['total'].to_numpy(dtype='float64'),
                      out=np.full(sites.shape[0], np.nan), where=sites['total'].to_numpy() > 0)
    region_plot = pd.melt(pd.DataFrame({'pos': sites['pos'].to_numpy(), 'Methylation level': level, 'Variance': sites['var'].to_numpy()}),
                          id_vars='pos', var_name='statistic')

    if ax is None:
        _, ax = plt.subplots(figsize=(10, 4))
    sns.lineplot(region_plot, x='pos', y='value', hue='statistic', marker='o', ax=ax)
    ax.axhline(result['var_cutoff'], color='grey', linestyle='--', label='Variance cutoff')

    if 'vmr_ranges' in result:
        vmr_ranges = result['vmr_ranges']
        in_cr = (vmr_ranges['start_ind'] >= cr['start_ind']) & (vmr_ranges['end_ind'] <= cr['end_ind'])
        for _, vmr in vmr_ranges[in_cr].iterrows():
            ax.axvspan(xmin=vmr['start'], xmax=vmr['end'], facecolor='#db6b6b', alpha=0.3)

    ax.set_title(f"Candidate region {cr_index}: {cr['chr']}:{cr['start']}-{cr['end']}")
    ax.set_xlabel("Genomic position")
    ax.set_ylabel("")
    return ax
