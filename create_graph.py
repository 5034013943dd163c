import argparse

import matplotlib
import pandas as pd
import seaborn as sns

from auc_bench import summarize


def plot_latency(csv_path, output_path, show=False):
    """
    Plots mean and 95th percentile broadcast latency against the number of bidders.

    Parameters:
    - csv_path (str): raw samples written by auc_bench.py
    - output_path (str): PNG file to write
    - show (bool): also open an interactive window
    """
    if not show:
        matplotlib.use('Agg')
    import matplotlib.pyplot as plt

    # Set a modern style for plots
    sns.set_theme(style="whitegrid")

    data = pd.read_csv(csv_path)
    summary = summarize(data)

    plt.figure(figsize=(10, 6))
    plt.plot(summary['bidders'], summary['mean_ms'], marker='o', linestyle='-', linewidth=2, color='blue',
             label='Mean')
    plt.plot(summary['bidders'], summary['p95_ms'], marker='s', linestyle='--', linewidth=2, color='darkorange',
             label='95th percentile')
    plt.title('Number of Bidders vs BID Broadcast Latency', fontsize=16, fontweight='bold')
    plt.xlabel('Number of Bidders', fontsize=14)
    plt.ylabel('Latency (ms)', fontsize=14)
    plt.xticks(summary['bidders'], fontsize=12)
    plt.yticks(fontsize=12)
    plt.grid(visible=True, linestyle='--', alpha=0.7)
    plt.legend(fontsize=12)
    plt.tight_layout()
    plt.savefig(output_path, dpi=300)  # Save the figure with high resolution
    if show:
        plt.show()
    plt.close()
    return summary


def main(argv=None):
    parser = argparse.ArgumentParser(description="Plot the results of auc_bench.py")
    parser.add_argument('--input', type=str, default='performance.csv', help="CSV written by auc_bench.py")
    parser.add_argument('--output', type=str, default='fig_latency_vs_bidders.png', help="PNG to write")
    parser.add_argument('--show', action='store_true', help="Open the plot in a window")
    args = parser.parse_args(argv)

    plot_latency(args.input, args.output, show=args.show)


if __name__ == "__main__":
    main()
