import argparse
import logging

from scatac_data_processing.config.load_config import load_config
from scatac_data_processing.io.visualize import load_checkpoint
from scatac_data_processing.pipeline import motif_analysis


def parse_args():
    parser = argparse.ArgumentParser(description='Differential accessibility, chromVAR and motif enrichment between two cell groups.')
    parser.add_argument('--config', type=str, required=True, help='YAML run configuration')
    parser.add_argument('--checkpoint', type=str, default=None,
                        help='h5mu container to start from, the gene_activity checkpoint of the run by default')
    parser.add_argument('--log_file', type=str, default=None, help='Log to this file instead of stderr')
    return parser.parse_args()


#main
if __name__ == "__main__":
    args = parse_args()
    logging.basicConfig(filename=args.log_file, level=logging.INFO, format='%(asctime)s %(message)s')
    config = load_config(args.config)
    mdata = load_checkpoint(args.checkpoint) if args.checkpoint else None
    mdata = motif_analysis(config, mdata)
    logging.info("Done: %s", mdata)
