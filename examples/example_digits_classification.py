"""
Digit Classification with a convolutional network.

Classifies the sklearn digits dataset (8x8 grayscale images, 10 classes) with
a convolutional layer followed by two dense layers:

1. Load and split the dataset
2. Normalize pixels and one-hot encode labels
3. Build the network from a NetworkConfig
4. Train with `learn` over shuffled mini-batches, evaluating after each epoch
5. Plot training loss and test accuracy
"""

import numpy as np
import time
import sys
import logging
import matplotlib.pyplot as plt

from clear_net import NetworkConfig, Optimizer, build


def load_sklearn_digits():
    try:
        from sklearn.datasets import load_digits
        from sklearn.model_selection import train_test_split
    except ImportError:
        print("Error: scikit-learn is required. pip install scikit-learn")
        sys.exit(1)
    print("Loading Scikit-learn digits dataset...")
    digits = load_digits()
    X, y = digits.data, digits.target
    print(f"Dataset loaded. X shape: {X.shape}, y shape: {y.shape}")
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.2, random_state=42, stratify=y)
    print(f"Split into Train: {X_train.shape}, Test: {X_test.shape}")
    return (X_train, y_train), (X_test, y_test)


def create_batches(X, y, batch_size, shuffle=True):
    N = X.shape[0]
    order = np.random.permutation(N) if shuffle else np.arange(N)
    for start in range(0, N, batch_size):
        batch = order[start:start + batch_size]
        yield X[batch], y[batch]


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(levelname)s - %(message)s')

    # --- Configuration ---
    EPOCHS = 15
    BATCH_SIZE = 32
    LEARNING_RATE = 0.005
    NUM_CLASSES = 10
    INPUT_WIDTH = INPUT_HEIGHT = 8
    NUM_KERNELS = 4

    (X_train_raw, y_train), (X_test_raw, y_test) = load_sklearn_digits()

    # Digits pixel values are 0-16; rows are already flattened as y * 8 + x
    X_train = X_train_raw / 16.0
    X_test = X_test_raw / 16.0
    y_train_one_hot = np.eye(NUM_CLASSES)[y_train]

    # Kernel 3x3, stride 1, no padding: 8 - 3 + 1 = 6, so 4 maps of 6x6 = 144 values
    config = (NetworkConfig(input_size=INPUT_WIDTH * INPUT_HEIGHT,
                            hidden_activation='leaky_relu',
                            output_activation='softmax',
                            cost_function='cross_entropy',
                            optimizer=Optimizer.ADAM)
              .add_convolutional(INPUT_WIDTH, INPUT_HEIGHT, 1, 3, 3, NUM_KERNELS)
              .add_dense(32)
              .add_dense(NUM_CLASSES))
    network = build(config)
    print(network.summary())

    print("\n--- Starting Training ---")
    start_time_total = time.time()
    train_losses = []
    test_accuracies = []

    for epoch in range(EPOCHS):
        epoch_start_time = time.time()
        epoch_loss = 0.0

        for X_batch, y_batch in create_batches(X_train, y_train_one_hot, BATCH_SIZE):
            epoch_loss += sum(network.cost(x, t) for x, t in zip(X_batch, y_batch))
            network.learn(LEARNING_RATE, 0.9, 0.999, 1e-8, X_batch, y_batch)

        average_epoch_loss = epoch_loss / len(X_train)
        train_losses.append(average_epoch_loss)

        test_predictions = np.argmax(network.predict(X_test), axis=1)
        test_accuracy = np.mean(test_predictions == y_test)
        test_accuracies.append(test_accuracy)

        print(f"Epoch {epoch+1}/{EPOCHS} | Loss: {average_epoch_loss:.4f} | "
              f"Test Accuracy: {test_accuracy * 100:.2f}% | Time: {time.time() - epoch_start_time:.2f}s")

    print("\n--- Training Finished ---")
    print(f"Total Training Time: {time.time() - start_time_total:.2f}s")

    final_predictions = np.argmax(network.predict(X_test), axis=1)
    print("\nExample Predictions (first 10 test samples):")
    print(f"  Predicted: {final_predictions[:10]}")
    print(f"  Actual:    {y_test[:10]}")

    plt.figure(figsize=(12, 5))
    plt.subplot(1, 2, 1)
    plt.plot(range(1, EPOCHS + 1), train_losses, label='Training Loss', marker='o')
    plt.xlabel('Epoch')
    plt.ylabel('Loss')
    plt.legend()
    plt.title('Training Loss over Epochs')
    plt.grid(True)

    plt.subplot(1, 2, 2)
    plt.plot(range(1, EPOCHS + 1), test_accuracies, label='Test Accuracy', color='orange', marker='o')
    plt.xlabel('Epoch')
    plt.ylabel('Accuracy')
    plt.ylim(0, 1.05)
    plt.legend()
    plt.title('Test Accuracy over Epochs')
    plt.grid(True)

    plt.tight_layout()
    plt.show()
