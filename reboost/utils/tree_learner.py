import numpy as np
from sklearn.tree import DecisionTreeRegressor
from ..exceptions import InvalidParameterError


class SklearnTreeLearner:
    """
    Fits one regression tree per boosting round with scikit-learn.

    A Newton step is a weighted least squares fit of -gradient / hessian with
    the hessian as sample weights, so that every leaf value equals
    -Σ gradient / Σ hessian over the samples in the leaf.

    Parameters
    ----------
    max_depth : int or None, default=5
        Maximum depth of the tree.
    min_samples_leaf : int, default=20
        Minimum number of samples in a leaf.
    max_leaf_nodes : int or None, default=None
        Maximum number of leaves.
    random_state : int or None, default=None
        Seed of the tree's feature permutation.
    """
    def __init__(self, max_depth: int | None = 5, min_samples_leaf: int = 20, max_leaf_nodes: int | None = None,
                 random_state: int | None = None):
        self.max_depth = max_depth
        self.min_samples_leaf = min_samples_leaf
        self.max_leaf_nodes = max_leaf_nodes
        self.random_state = random_state

    def fit_tree(self, gradient: np.ndarray, hessian: np.ndarray, X: np.ndarray) -> DecisionTreeRegressor:
        """
        Fit a tree to the Newton (or gradient) step.

        Parameters
        ----------
        gradient : np.ndarray, shape (n_samples,)
            Gradient of the loss w.r.t. the current score.
        hessian : np.ndarray, shape (n_samples,)
            Positive Hessian diagonal; all ones for gradient boosting.
        X : np.ndarray, shape (n_samples, n_features)
            Training input samples.

        Returns
        -------
        tree : DecisionTreeRegressor
            Fitted tree predicting the score update.
        """
        if gradient.shape != hessian.shape or gradient.shape[0] != X.shape[0]:
            raise InvalidParameterError(
                f"gradient {gradient.shape}, hessian {hessian.shape} and X {X.shape} do not match.")
        if np.any(hessian <= 0):
            raise InvalidParameterError("hessian must be positive.")

        tree = DecisionTreeRegressor(max_depth=self.max_depth, min_samples_leaf=self.min_samples_leaf,
                                     max_leaf_nodes=self.max_leaf_nodes, random_state=self.random_state)
        tree.fit(X, -gradient / hessian, sample_weight=hessian)
        return tree

    def __repr__(self):
        return (f"SklearnTreeLearner(max_depth={self.max_depth}, min_samples_leaf={self.min_samples_leaf}, "
                f"max_leaf_nodes={self.max_leaf_nodes})")
