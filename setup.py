from setuptools import setup, find_packages

setup(
    name="heartlens",
    version="0.1.0",
    description="Camera-based heart rate, HRV and signal-quality estimation (rPPG)",
    packages=find_packages(exclude=["tests"]),
    py_modules=["main"],
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "scipy>=1.10",
        "opencv-python>=4.8,<5",
        "pymongo>=4.0",
    ],
    extras_require={
        "dev": ["pytest>=7.4"],
    },
    entry_points={
        "console_scripts": [
            "heartlens=main:main",
        ]
    },
)
