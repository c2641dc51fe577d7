import argparse
import logging

from scatac_data_processing.config.load_config import load_config
from scatac_data_processing.pipeline import preprocess


def parse_args():
    parser = argparse.ArgumentParser(description='Read, QC, merge, cluster scATAC-seq samples and compute gene activities.')
    parser.add_argument('--config', type=str, required=True, help='YAML run configuration')
    parser.add_argument('--output_dir', type=str, default=None, help='Override run.output_dir')
    parser.add_argument('--log_file', type=str, default=None, help='Log to this file instead of stderr')
    return parser.parse_args()


#main
if __name__ == "__main__":
    args = parse_args()
    logging.basicConfig(filename=args.log_file, level=logging.INFO, format='%(asctime)s %(message)s')
    overrides = {'run': {'output_dir': args.output_dir}} if args.output_dir else {}
    config = load_config(args.config, **overrides)
    mdata = preprocess(config)
    logging.info("Done: %s", mdata)
