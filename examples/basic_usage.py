import os
import time
import logging
import numpy as np
import matplotlib.pyplot as plt
from sklearn.datasets import make_moons # Using this for the main example

from clear_net import Network, NetworkConfig, Optimizer, build

# --- Plotting Function ---

def plot_decision_boundary(X: np.ndarray, y_raw: np.ndarray, model: Network, title: str = "Decision Boundary"):
    """Plots the decision boundary of a trained model.

    Args:
        X: Input features used for training (for axis limits and plotting points).
           Shape (n_samples, 2).
        y_raw: True integer class labels for the input features. Shape (n_samples,).
        model: Trained Network instance.
        title: Figure title.
    """
    h = 0.05 # Step size in the mesh

    x_min, x_max = X[:, 0].min() - 0.5, X[:, 0].max() + 0.5
    y_min, y_max = X[:, 1].min() - 0.5, X[:, 1].max() + 0.5
    xx, yy = np.meshgrid(np.arange(x_min, x_max, h),
                         np.arange(y_min, y_max, h))

    mesh_points = np.c_[xx.ravel(), yy.ravel()]
    Z_probs = model.predict(mesh_points)

    if Z_probs.shape[1] > 1:
        Z = np.argmax(Z_probs, axis=1)
    else:
        Z = (Z_probs >= 0.5).astype(int).ravel()
    Z = Z.reshape(xx.shape)

    plt.figure(title, figsize=(10, 8))
    cmap = plt.cm.Spectral
    plt.contourf(xx, yy, Z, cmap=cmap, alpha=0.8)
    plt.scatter(X[:, 0], X[:, 1], c=y_raw, cmap=cmap, edgecolor='k', s=35)
    plt.xlabel("Feature 1")
    plt.ylabel("Feature 2")
    plt.title(title)
    plt.xlim(xx.min(), xx.max())
    plt.ylim(yy.min(), yy.max())
    plt.grid(True, alpha=0.2)


def plot_history(history: dict, name: str):
    plt.figure(f"{name} Training History", figsize=(12, 5))

    plt.subplot(1, 2, 1)
    plt.plot(history['epoch'], history['loss'], label='Training Loss')
    plt.xlabel('Epoch')
    plt.ylabel('Loss')
    plt.title(f'{name} Training Loss')
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.ylim(bottom=0)

    plt.subplot(1, 2, 2)
    plt.plot(history['epoch'], history['time_per_epoch'], label='Time per Epoch (s)')
    plt.xlabel('Epoch')
    plt.ylabel('Time (seconds)')
    plt.title('Epoch Training Time')
    plt.legend()
    plt.grid(True, alpha=0.3)
    plt.ylim(bottom=0)

    plt.tight_layout()


# --- Make Moons Example ---

def make_moons_example():
    """Two-class softmax classifier on the 'make_moons' dataset, trained with ADAM."""
    logger = logging.getLogger("MakeMoonsExample")
    logger.setLevel(logging.INFO)

    # --- Data Preparation ---
    logger.info("Generating make_moons dataset...")
    X_original, y_raw = make_moons(n_samples=300, noise=0.1, random_state=42)

    X = (X_original - X_original.mean(axis=0)) / (X_original.std(axis=0) + 1e-8)
    y_one_hot = np.eye(2)[y_raw]
    logger.info(f"Data shapes - X: {X.shape}, y: {y_one_hot.shape}")

    # --- Network Definition ---
    config = (NetworkConfig(input_size=2,
                            hidden_activation='relu',
                            output_activation='softmax',
                            cost_function='cross_entropy',
                            optimizer=Optimizer.ADAM)
              .add_dense(16)
              .add_dense(16)
              .add_dense(2))
    network = build(config)
    print(network.summary())

    # --- Training ---
    logger.info("Starting training...")
    start_time = time.time()
    history = network.fit(X, y_one_hot, epochs=200, batch_size=32, learning_rate=0.01, log_every=20)
    logger.info(f"Training finished. Total training time: {time.time() - start_time:.2f} seconds")

    accuracy = np.mean(np.argmax(network.predict(X), axis=1) == y_raw)
    print(f"Make Moons accuracy: {accuracy:.2%}")

    plot_history(history, "Make Moons")
    plot_decision_boundary(X, y_raw, network, "Make Moons Decision Boundary")

    # --- Saving Model ---
    model_filename = os.path.join(".", "make_moons_model_weights.npz")
    logger.info(f"Saving trained model weights to {model_filename}...")
    network.save_weights(model_filename)
    restored = Network.load_weights(model_filename)
    logger.info(f"Reloaded network matches trained one: {restored == network}")


# --- XOR Example ---

def xor_example():
    """Example of training on the XOR problem."""
    logger = logging.getLogger("XORExample")
    logger.setLevel(logging.INFO)

    logger.info("--- Running XOR Example ---")
    X = np.array([[0, 0], [0, 1], [1, 0], [1, 1]])
    y = np.array([[0], [1], [1], [0]]) # Target shape (4, 1)

    config = (NetworkConfig(input_size=2,
                            hidden_activation='tanh',
                            output_activation='sigmoid',
                            cost_function='cross_entropy',
                            optimizer=Optimizer.MOMENTUM)
              .add_dense(4)
              .add_dense(1))
    network = build(config)
    logger.info(f"XOR Network Summary:\n{network.summary()}")

    history = network.fit(X, y, epochs=3000, batch_size=4, learning_rate=0.5, shuffle=False, log_every=500)

    predictions = network.predict(X)
    correct = 0
    for inputs, target, pred in zip(X, y, predictions):
        pred_class = pred[0] >= 0.5
        is_correct = pred_class == target[0]
        if is_correct: correct += 1
        logger.info(f"Input: {inputs}, Target: {target[0]}, Prediction: {pred[0]:.4f} -> Class: {int(pred_class)} {'(Correct)' if is_correct else '(Incorrect)'}")
    logger.info(f"XOR Accuracy: {correct / len(X):.2%}")

    plot_history(history, "XOR")
    plot_decision_boundary(X.astype(float), y.ravel(), network, "XOR Decision Boundary")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    print("\n" + "="*40)
    print("--- Running XOR Classification Example ---")
    print("="*40)
    xor_example()

    print("\n" + "="*40)
    print("--- Running Make Moons Classification Example ---")
    print("="*40)
    make_moons_example()

    print("\nDisplaying plots. Close plot windows to exit.")
    plt.show()
