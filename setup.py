"""Setup script for the Procedure Frame Sequencer project"""

from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="procedure-frame-sequencer",
    version="0.1.0",
    description="Adaptive frame capture, scene segmentation and frame-to-step alignment for procedure videos",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    py_modules=[
        "cancel",
        "capture",
        "config",
        "frame_metrics",
        "inference",
        "inference_cache",
        "main",
        "matching",
        "models",
        "scene_detection",
        "similarity",
        "transcription",
    ],
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Multimedia :: Video",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.21.0",
        "scipy>=1.7.0",
        "opencv-python>=4.5.0",
        "librosa>=0.9.0",
        "torch>=1.10.0",
        "transformers>=4.20.0",
        "pillow>=9.0.0",
        "openai-whisper>=20230314",
        "openai>=1.0.0",
        "tqdm>=4.62.0",
        "pydantic>=2.0.0",
        "pyyaml>=5.4.0",
    ],
    extras_require={
        "test": ["pytest>=7.0.0"],
    },
    entry_points={
        "console_scripts": [
            "frame-sequencer=main:main",
        ],
    },
)
