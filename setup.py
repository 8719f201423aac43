from setuptools import setup, find_packages

setup(
    name="gps-speedometer",
    version="1.0.0",
    description="Smoothed GPS speed with a recordable live video overlay",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "Pillow>=10.1.0",
        "click>=8.0.0",
        "opencv-python>=4.5.0",
        "numpy>=1.21.0",
        "pandas>=1.3.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "speedometer=gps_speedometer.cli:cli",
        ],
    },
    python_requires=">=3.8",
)
