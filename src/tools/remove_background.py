#!/usr/bin/env python3
"""
Background removal tool.

Usage:
    python remove_background.py <source> <destination>

Prints SUCCESS on stdout and exits 0 once <destination> is written; prints
"ERROR: <message>" on stderr and exits 1 otherwise. Runs in its own process so
the model's memory is released when it exits.
"""

import sys


def main(argv) -> int:
    if len(argv) != 3:
        print("ERROR: usage: remove_background.py <source> <destination>", file=sys.stderr)
        return 2

    source, destination = argv[1], argv[2]
    try:
        # Lazy import: rembg pulls in onnxruntime and a model download
        from rembg import remove
        from PIL import Image

        with Image.open(source) as input_image:
            output_image = remove(input_image)
        output_image.save(destination, format="PNG")
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    print("SUCCESS")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
