"""Command line entry point.

Usage:
    python -m triplet_embedding fit data.npy embedding.npy --k 15 --model-dir model/
    python -m triplet_embedding transform model/ new_data.npy new_embedding.npy
"""

import argparse
import sys
import time

from absl import logging

from triplet_embedding import settings
from triplet_embedding.errors import EmbeddingError
from triplet_embedding.losses import LOSS_NAMES
from triplet_embedding.storage import embedding_exists, load_matrix, save_embedding
from triplet_embedding.wrapper import TripletEmbedding


def _model_arg(value):
    if ',' in value or value.isdigit():
        return tuple(int(width) for width in value.split(',') if width)
    return value


def build_parser():
    parser = argparse.ArgumentParser(prog='triplet_embedding',
                                     description='Fit and apply neighbor-driven triplet embeddings.')
    parser.add_argument('--verbose', action='store_true', help='Log training progress')
    subparsers = parser.add_subparsers(dest='command', required=True)

    fit = subparsers.add_parser('fit', help='Fit a model and embed its training data')
    fit.add_argument('input', help='Input matrix (.npy, .csv or .tsv), one point per row')
    fit.add_argument('output', help='Where to write the embedding (.npy)')
    fit.add_argument('--model-dir', default=None, help='Directory to save the trained model in')
    fit.add_argument('--overwrite', action='store_true', help='Replace an existing output embedding and model directory')
    fit.add_argument('--dims', type=int, default=settings.EMBEDDING_DIMS, help='Embedding dimensions')
    fit.add_argument('--k', type=int, default=settings.N_NEIGHBORS, help='Neighbors per point')
    fit.add_argument('--distance', choices=LOSS_NAMES, default=settings.DISTANCE, help='Triplet loss')
    fit.add_argument('--margin', type=float, default=settings.MARGIN)
    fit.add_argument('--model', type=_model_arg, default=settings.MODEL,
                     help='szubert, hinton, maaten, or comma separated hidden layer sizes')
    fit.add_argument('--batch-size', type=int, default=settings.BATCH_SIZE)
    fit.add_argument('--epochs', type=int, default=settings.EPOCHS, help='Maximum number of epochs')
    fit.add_argument('--patience', type=int, default=settings.N_EPOCHS_WITHOUT_PROGRESS,
                     help='Epochs without progress before stopping')
    fit.add_argument('--min-delta', type=float, default=settings.MIN_DELTA,
                     help='Smallest loss decrease counted as progress')
    fit.add_argument('--learning-rate', type=float, default=settings.LEARNING_RATE)
    fit.add_argument('--optimizer', choices=['adam', 'sgd', 'rmsprop'], default=settings.OPTIMIZER)
    fit.add_argument('--metric', default=settings.METRIC, help='Input space metric for the neighbor search')
    fit.add_argument('--neighbor-method', choices=['auto', 'exact', 'nndescent'],
                     default=settings.NEIGHBOR_METHOD)
    fit.add_argument('--max-negative-retries', type=int, default=settings.MAX_NEGATIVE_RETRIES,
                     help='Redraws of a negative that hits a neighbor before accepting it')
    fit.add_argument('--n-jobs', type=int, default=-1)
    fit.add_argument('--seed', type=int, default=None)

    transform = subparsers.add_parser('transform', help='Embed new points with a saved model')
    transform.add_argument('model_dir', help='Directory written by fit --model-dir')
    transform.add_argument('input', help='Input matrix (.npy, .csv or .tsv)')
    transform.add_argument('output', help='Where to write the embedding (.npy)')
    return parser


def run_fit(args):
    if embedding_exists(args.output) and not args.overwrite:
        raise FileExistsError(f'{args.output} already exists, pass --overwrite to replace it.')
    X = load_matrix(args.input)
    estimator = TripletEmbedding(embedding_dims=args.dims,
                                 k=args.k,
                                 distance=args.distance,
                                 margin=args.margin,
                                 model=args.model,
                                 batch_size=args.batch_size,
                                 epochs=args.epochs,
                                 n_epochs_without_progress=args.patience,
                                 min_delta=args.min_delta,
                                 learning_rate=args.learning_rate,
                                 optimizer=args.optimizer,
                                 metric=args.metric,
                                 neighbor_method=args.neighbor_method,
                                 max_negative_retries=args.max_negative_retries,
                                 n_jobs=args.n_jobs,
                                 random_state=args.seed,
                                 verbose=args.verbose)
    start_time = time.time()
    embedding = estimator.fit_transform(X)
    elapsed = time.time() - start_time
    state = estimator.training_state_
    metadata = {
        'n_points': int(X.shape[0]),
        'input_dims': int(X.shape[1]),
        'embedding_dims': args.dims,
        'epochs': state.epoch,
        'best_loss': state.best_loss,
        'stop_reason': state.stop_reason,
        'violated_triplets': state.violation_history[-1],
        'seed': estimator.seed_,
        'time': elapsed,
    }
    path = save_embedding(args.output, embedding, metadata)
    logging.info('wrote %s embedding to %s in %.1fs, %.2f%% violated triplets',
                 embedding.shape, path, elapsed, metadata['violated_triplets'] * 100.0)
    if args.model_dir:
        estimator.save_model(args.model_dir, overwrite=args.overwrite)
        logging.info('saved model to %s', args.model_dir)


def run_transform(args):
    estimator = TripletEmbedding.load_model(args.model_dir)
    embedding = estimator.transform(load_matrix(args.input))
    path = save_embedding(args.output, embedding)
    logging.info('wrote %s embedding to %s', embedding.shape, path)


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.set_verbosity(logging.INFO if args.verbose else logging.WARNING)
    try:
        if args.command == 'fit':
            run_fit(args)
        else:
            run_transform(args)
    except (EmbeddingError, ValueError, OSError) as exc:
        logging.error('%s failed: %s', args.command, exc)
        sys.exit(1)


if __name__ == '__main__':
    main()
